"""Telephony components for LiveKit-bridged phone calls.

A call is a LiveKit room: the PSTN leg joins as a SIP participant (dialed by
us for outbound calls, routed in by a dispatch rule for inbound calls) and
the assistant joins as a bot participant publishing one audio track.
"""
