"""Shared fixtures: synthetic WAV files and a fake ADPCM encoder."""

import os
import struct

import pytest

from txthconv import EncoderMissingError

WAVE_FORMAT_PCM = 1
WAVE_FORMAT_ADPCM = 2


def build_chunk(chunk_id, payload):
    chunk = chunk_id + struct.pack("<I", len(payload)) + payload
    if len(payload) % 2 == 1:
        chunk += b"\x00"
    return chunk


def build_fmt(format_tag, channels, sample_rate, block_align, bits_per_sample, extra=b""):
    byte_rate = sample_rate * block_align
    payload = struct.pack(
        "<HHIIHH",
        format_tag,
        channels,
        sample_rate,
        byte_rate,
        block_align,
        bits_per_sample,
    )
    return build_chunk(b"fmt ", payload + extra)


def build_wav(chunks):
    body = b"WAVE" + b"".join(chunks)
    return b"RIFF" + struct.pack("<I", len(body)) + body


def pcm_wav(data, channels=2, sample_rate=44100, bits_per_sample=16, extra_chunks=()):
    block_align = channels * bits_per_sample // 8
    return build_wav(
        [build_fmt(WAVE_FORMAT_PCM, channels, sample_rate, block_align, bits_per_sample)]
        + list(extra_chunks)
        + [build_chunk(b"data", data)]
    )


def adpcm_wav(data, channels=2, sample_rate=44100, block_align=36, sample_count=None):
    # cbSize + wSamplesPerBlock + wNumCoef, coefficient table omitted
    extra = struct.pack("<HHH", 4, 32, 0)
    chunks = [build_fmt(WAVE_FORMAT_ADPCM, channels, sample_rate, block_align, 4, extra)]
    if sample_count is not None:
        chunks.append(build_chunk(b"fact", struct.pack("<I", sample_count)))
    chunks.append(build_chunk(b"data", data))
    return build_wav(chunks)


def pcm16_stereo_data(sample_count):
    return bytes(i % 251 for i in range(sample_count * 4))


class FakeEncoder:
    """Stand-in for the external encoder binary."""

    def __init__(self, exit_code=0, output=None, missing=False):
        self.exit_code = exit_code
        self.output = output
        self.missing = missing
        self.calls = []

    def check(self):
        if self.missing:
            raise EncoderMissingError("tools/AdpcmEncode.exe")
        return "tools/AdpcmEncode.exe"

    def encode(self, input_path, output_path):
        self.calls.append((input_path, output_path))
        if self.output is not None:
            with open(output_path, "wb") as f:
                f.write(self.output)
        return self.exit_code


@pytest.fixture
def write_file(tmp_path):
    def _write(name, content):
        path = tmp_path / name
        path.write_bytes(content)
        return str(path)

    return _write


@pytest.fixture
def stereo_source(write_file):
    """16-bit stereo 44.1 kHz PCM, 88200 samples."""
    data = pcm16_stereo_data(88200)
    return write_file("music.wav", pcm_wav(data)), data


def output_files(directory):
    return sorted(name for name in os.listdir(directory) if not name.endswith(".wav"))
