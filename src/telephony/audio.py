"""PCM16 helpers shared by the transport and the speech clients."""

from __future__ import annotations

from collections.abc import Iterator

import numpy as np


def pcm16_from_bytes(data: bytes) -> np.ndarray:
    """View little-endian linear16 bytes as an int16 array (odd trailing byte dropped)."""

    usable = len(data) - (len(data) % 2)
    return np.frombuffer(data[:usable], dtype="<i2").astype(np.int16)


def pcm16_resample(pcm: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    if src_rate == dst_rate:
        return pcm
    if pcm.size == 0:
        return pcm.astype(np.int16)

    x_old = np.arange(pcm.size, dtype=np.float32)
    x_new = np.linspace(0, pcm.size - 1, int(pcm.size * dst_rate / src_rate), dtype=np.float32)

    y_old = pcm.astype(np.float32)
    y_new = np.interp(x_new, x_old, y_old)

    return np.clip(y_new, -32768, 32767).astype(np.int16)


def iter_pcm16_frames(pcm: np.ndarray, sample_rate: int, frame_ms: int) -> Iterator[np.ndarray]:
    """Split PCM into fixed-size frames, padding the last one with silence."""

    frame_samples = int(sample_rate * frame_ms / 1000)
    if frame_samples <= 0:
        return

    for i in range(0, pcm.size, frame_samples):
        chunk = pcm[i : i + frame_samples]
        if chunk.size < frame_samples:
            pad = np.zeros(frame_samples - chunk.size, dtype=np.int16)
            chunk = np.concatenate([chunk, pad])
        yield chunk


def resample_pcm16_bytes(data: bytes, src_rate: int, dst_rate: int) -> bytes:
    if src_rate == dst_rate:
        return data
    return pcm16_resample(pcm16_from_bytes(data), src_rate, dst_rate).tobytes()
