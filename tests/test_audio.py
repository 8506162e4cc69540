from __future__ import annotations

import numpy as np

from telephony.audio import iter_pcm16_frames, pcm16_from_bytes, pcm16_resample


def test_pcm16_from_bytes_drops_trailing_odd_byte():
    pcm = pcm16_from_bytes(b"\x01\x00\xff\x7f\x05")

    assert pcm.dtype == np.int16
    assert pcm.tolist() == [1, 32767]


def test_pcm16_resample_changes_length_by_rate_ratio():
    pcm = np.arange(160, dtype=np.int16)

    up = pcm16_resample(pcm, 8000, 16000)
    down = pcm16_resample(pcm, 16000, 8000)

    assert up.size == 320
    assert down.size == 80
    assert up.dtype == np.int16
    assert pcm16_resample(pcm, 16000, 16000) is pcm


def test_iter_pcm16_frames_pads_last_frame():
    pcm = np.ones(350, dtype=np.int16)

    frames = list(iter_pcm16_frames(pcm, 16000, 20))

    assert [frame.size for frame in frames] == [320, 320]
    assert frames[1][:30].tolist() == [1] * 30
    assert not frames[1][30:].any()
