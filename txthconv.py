#!/usr/bin/env python3
"""WAV to RAW + TXTH converter.

Converts PCM or MS ADPCM WAV files into a headerless RAW stream plus a
``.txth`` sidecar describing the stream (sample count, codec, channels,
sample rate, interleave and optional loop points) for game-audio engines
that cannot parse the WAV container themselves.

Usage: txthconv.py <input.wav> [output.raw] [--loop START END] [--passthrough]

Copyright (c) 2025, txthconv contributors
"""

import argparse
import logging
import os
import shutil
import struct
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Callable

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

WAVE_FORMAT_PCM = 0x0001
WAVE_FORMAT_ADPCM = 0x0002
WAVE_FORMAT_IEEE_FLOAT = 0x0003
WAVE_FORMAT_EXTENSIBLE = 0xFFFE

FORMAT_NAMES = {
    WAVE_FORMAT_PCM: "PCM",
    WAVE_FORMAT_ADPCM: "ADPCM",
    WAVE_FORMAT_IEEE_FLOAT: "IEEEFLOAT",
    0x0006: "ALAW",
    0x0007: "MULAW",
    0x0011: "DVIADPCM",
    0x0055: "MPEGLAYER3",
    WAVE_FORMAT_EXTENSIBLE: "EXTENSIBLE",
}

# Formats whose sample count can be derived from the data chunk size
FRAME_SIZED_FORMATS = (WAVE_FORMAT_PCM, WAVE_FORMAT_IEEE_FLOAT, WAVE_FORMAT_EXTENSIBLE)

# Per-channel block header overhead (bytes) used for loop alignment
BLOCK_HEADER_BYTES = {
    WAVE_FORMAT_ADPCM: 6,
}

DEFAULT_ENCODER_PATH = os.path.join("tools", "AdpcmEncode.exe")
SIDECAR_SUFFIX = ".txth"
RAW_SUFFIX = ".raw"


# =============================================================================
# Errors
# =============================================================================


class ConversionError(Exception):
    """Base class for all conversion failures."""


class ValidationError(ConversionError):
    """User-supplied conversion parameters are invalid."""


class InputNotFoundError(ConversionError, FileNotFoundError):
    """The input WAV file does not exist."""

    def __init__(self, path):
        super().__init__(f"The specified input file does not exist: {path}")
        self.path = path


class MalformedContainerError(ConversionError):
    """The WAV container is missing required chunks or is truncated."""


class UnsupportedEncodingError(ConversionError):
    """The WAV codec or PCM bit depth cannot be converted."""


class EncoderMissingError(ConversionError):
    """The external ADPCM encoder binary could not be found."""

    def __init__(self, path):
        super().__init__(
            f"Unable to find MSADPCM encoder tool (not found or not executable)! "
            f"Expected it at {path}"
        )
        self.path = path


class EncoderFailedError(ConversionError):
    """The external ADPCM encoder exited with an error."""

    def __init__(self, exit_code, message=None):
        if message is None:
            message = (
                f"The MSADPCM encoder tool exited with code {exit_code}. "
                "This indicates an error."
            )
        super().__init__(message)
        self.exit_code = exit_code


class LoopPointNotAlignedError(ConversionError):
    """A loop point is not block aligned and the conversion was cancelled."""

    def __init__(self, name, offset, samples_per_block):
        super().__init__(
            f"The loop {name} point ({offset}) is not aligned to "
            f"{samples_per_block} samples per block. Conversion cancelled."
        )
        self.name = name
        self.offset = offset
        self.samples_per_block = samples_per_block


class LoopRangeInvalidError(ValidationError):
    """Loop points fall outside the stream or are out of order."""


# =============================================================================
# Data Model
# =============================================================================


class Codec(Enum):
    """Normalized codec labels, as written to the sidecar."""

    PCM8 = "PCM8"
    PCM16LE = "PCM16LE"
    MSADPCM = "MSADPCM"


class Alignment(Enum):
    """How to handle a loop point that is not aligned to a block boundary."""

    ACCEPT = "accept"  # round up to the next block boundary
    REJECT = "reject"  # keep the unaligned offset
    ABORT = "abort"  # cancel the conversion


@dataclass(frozen=True)
class WaveFormat:
    """Format fields from a WAV ``fmt `` chunk."""

    format_tag: int
    channels: int
    sample_rate: int
    block_align: int
    bits_per_sample: int

    @property
    def format_name(self):
        return FORMAT_NAMES.get(self.format_tag, f"0x{self.format_tag:04X}")

    @property
    def samples_per_block(self):
        """Decodable samples per block, or None for codecs without block headers.

        Uses the per-channel header overhead of the codec:
        ``block_align - header_bytes * channels``.
        """
        header_bytes = BLOCK_HEADER_BYTES.get(self.format_tag)
        if header_bytes is None:
            return None
        return self.block_align - header_bytes * self.channels


@dataclass
class AudioStream:
    """Parsed WAV contents: format, sample count and the raw data chunk."""

    format: WaveFormat
    sample_count: int | None
    data: bytes


@dataclass
class LoopRequest:
    start: int
    end: int


@dataclass
class LoopPoints:
    start: int
    end: int


@dataclass
class ConversionOptions:
    """Conversion options data class."""

    input_path: str
    output_path: str
    loop: LoopRequest | None = None
    passthrough: bool = False
    alignment: Alignment | Callable[..., Alignment] = Alignment.ACCEPT


@dataclass
class ConversionResult:
    codec: Codec
    format: WaveFormat
    sample_count: int
    loop: LoopPoints | None
    sidecar: str
    data: bytes
    output_path: str
    sidecar_path: str


# =============================================================================
# WAV Container Reader
# =============================================================================


def _read_chunks(f, path):
    """Walk the chunks of an open WAV file.

    The walk stops at the end of the RIFF body, so data appended after it
    (ID3 tags and the like) is ignored. A RIFF size that overshoots the file,
    or a zero placeholder size, falls back to the end of the file.

    Returns:
        tuple: (fmt_data, data, fact_data), each None if the chunk is absent
    """
    header = f.read(12)
    if len(header) < 12 or header[0:4] != b"RIFF" or header[8:12] != b"WAVE":
        raise MalformedContainerError(f"{path}: not a RIFF/WAVE file")

    riff_size = struct.unpack_from("<I", header, 4)[0]
    file_size = os.fstat(f.fileno()).st_size
    riff_end = file_size if riff_size < 4 else min(8 + riff_size, file_size)
    if riff_end < file_size:
        logger.debug("%s: ignoring %d bytes after RIFF body", path, file_size - riff_end)

    fmt_data = None
    data = None
    fact_data = None

    while f.tell() < riff_end:
        if riff_end - f.tell() < 8:
            logger.debug("%s: ignoring %d trailing bytes", path, riff_end - f.tell())
            break
        chunk_id, chunk_size = struct.unpack("<4sI", f.read(8))
        chunk_data = f.read(chunk_size)
        name = chunk_id.decode("ascii", "replace")
        if len(chunk_data) < chunk_size:
            raise MalformedContainerError(
                f"{path}: '{name}' chunk is truncated "
                f"({len(chunk_data)} of {chunk_size} bytes)"
            )
        if chunk_size % 2 == 1:  # padding
            f.read(1)

        logger.debug("%s: chunk '%s' (%d bytes)", path, name, chunk_size)

        if chunk_id == b"fmt " and fmt_data is None:
            fmt_data = chunk_data
        elif chunk_id == b"data" and data is None:
            data = chunk_data
        elif chunk_id == b"fact" and fact_data is None:
            fact_data = chunk_data

    return fmt_data, data, fact_data


def read_wave(path):
    """Parse a RIFF/WAVE file.

    Chunks are walked in file order, so the data chunk is found wherever the
    writer put it (extra ``fact``/``LIST`` chunks before it are fine).

    Args:
        path: Path to WAV file

    Returns:
        AudioStream: format, sample count (None if the container does not
        expose one) and the data chunk bytes without its header

    Raises:
        InputNotFoundError: if the file does not exist
        MalformedContainerError: if required chunks are missing or truncated
    """
    try:
        f = open(path, "rb")
    except FileNotFoundError:
        raise InputNotFoundError(path) from None
    except OSError as e:
        raise MalformedContainerError(f"{path}: cannot read file: {e}") from e

    with f:
        try:
            fmt_data, data, fact_data = _read_chunks(f, path)
        except OSError as e:
            raise MalformedContainerError(f"{path}: cannot read file: {e}") from e

    if fmt_data is None:
        raise MalformedContainerError(f"{path}: missing 'fmt ' chunk")
    if len(fmt_data) < 16:
        raise MalformedContainerError(
            f"{path}: 'fmt ' chunk is too short ({len(fmt_data)} bytes)"
        )
    if data is None:
        raise MalformedContainerError(f"{path}: missing 'data' chunk")

    format_tag, channels, sample_rate, _, block_align, bits_per_sample = (
        struct.unpack_from("<HHIIHH", fmt_data)
    )
    if channels == 0 or block_align == 0:
        raise MalformedContainerError(
            f"{path}: invalid format (channels={channels}, block_align={block_align})"
        )

    fmt = WaveFormat(format_tag, channels, sample_rate, block_align, bits_per_sample)

    # ADPCM data size says nothing about decoded length; only a fact chunk does
    if format_tag in FRAME_SIZED_FORMATS:
        sample_count = len(data) // block_align
    elif fact_data is not None and len(fact_data) >= 4:
        sample_count = struct.unpack_from("<I", fact_data)[0]
    else:
        sample_count = None

    return AudioStream(fmt, sample_count, data)


# =============================================================================
# Format Validation
# =============================================================================


def validate_format(fmt):
    """Map a WAV format to its sidecar codec label.

    Args:
        fmt: WaveFormat of the stream that will be written out

    Returns:
        Codec: normalized codec

    Raises:
        UnsupportedEncodingError: for codecs other than PCM/MS ADPCM, or PCM
        bit depths other than 8 and 16
    """
    if fmt.format_tag == WAVE_FORMAT_ADPCM:
        return Codec.MSADPCM

    if fmt.format_tag == WAVE_FORMAT_PCM:
        label = f"PCM{fmt.bits_per_sample}"
        if fmt.bits_per_sample == 16:
            label += "LE"
        if fmt.bits_per_sample > 16:
            raise UnsupportedEncodingError(
                f"The provided input file uses an unsupported PCM encoding: {label}"
            )
        try:
            return Codec(label)
        except ValueError:
            raise UnsupportedEncodingError(
                f"The provided input file uses an unsupported PCM encoding: {label}"
            ) from None

    raise UnsupportedEncodingError(
        f"The provided input file uses an unsupported codec: {fmt.format_name}"
    )


# =============================================================================
# Loop Point Resolution
# =============================================================================


def align_loop_point(offset, samples_per_block, sample_count):
    """Round a loop point up to the next block boundary.

    If rounding up overshoots the end of the stream, the point is moved back
    by one block instead. If that still goes negative the original offset is
    returned unchanged.

    Args:
        offset: Loop point (sample index)
        samples_per_block: Samples per codec block (> 0)
        sample_count: Total samples in the stream

    Returns:
        int: Aligned loop point
    """
    remainder = offset % samples_per_block
    if remainder == 0:
        return offset

    aligned = offset + samples_per_block - remainder
    if aligned > sample_count:
        aligned -= samples_per_block
    if aligned < 0:
        return offset
    return aligned


def resolve_loop_points(
    request, fmt, sample_count, encoded=True, policy=Alignment.ACCEPT
):
    """Validate loop points and align them to the codec's block size.

    Alignment only applies to encoded output; passthrough streams use the
    requested offsets verbatim.

    Args:
        request: LoopRequest with the user-supplied start/end
        fmt: WaveFormat of the final stream
        sample_count: Sample count of the original source
        encoded: True if the external encoder produced the stream
        policy: Alignment value, or a callable
            ``(name, offset, samples_per_block, aligned) -> Alignment``
            consulted for every unaligned point

    Returns:
        LoopPoints: validated loop points

    Raises:
        LoopPointNotAlignedError: if the policy aborts the conversion
        LoopRangeInvalidError: if a point is out of bounds or start >= end
    """
    samples_per_block = fmt.samples_per_block
    align = encoded and samples_per_block is not None and samples_per_block > 0
    if encoded and not align:
        logger.warning(
            "Cannot align loop points for %s stream (block_align=%d, channels=%d)",
            fmt.format_name,
            fmt.block_align,
            fmt.channels,
        )

    points = []
    for name, offset in (("start", request.start), ("end", request.end)):
        if offset < 0:
            raise LoopRangeInvalidError(
                f"The loop {name} point must be a non-negative integer (got {offset})."
            )

        if align and offset % samples_per_block != 0:
            offset = _apply_alignment(
                name, offset, samples_per_block, sample_count, policy
            )

        if offset < 0 or offset > sample_count:
            raise LoopRangeInvalidError(
                f"The loop {name} point ({offset}) is out of bounds "
                f"(0-{sample_count})."
            )
        points.append(offset)

    start, end = points
    if start >= end:
        raise LoopRangeInvalidError(
            f"The loop start point ({start}) would be equal to or after "
            f"the end point ({end}). This is invalid."
        )
    return LoopPoints(start, end)


def _apply_alignment(name, offset, samples_per_block, sample_count, policy):
    aligned = align_loop_point(offset, samples_per_block, sample_count)
    if callable(policy):
        choice = Alignment(policy(name, offset, samples_per_block, aligned))
    else:
        choice = Alignment(policy)

    if choice is Alignment.ABORT:
        raise LoopPointNotAlignedError(name, offset, samples_per_block)
    if choice is Alignment.REJECT:
        logger.warning(
            "Keeping unaligned loop %s point %d (%d samples per block)",
            name,
            offset,
            samples_per_block,
        )
        return offset

    logger.info("Loop %s point aligned: %d -> %d", name, offset, aligned)
    return aligned


# =============================================================================
# TXTH Sidecar
# =============================================================================


def render_sidecar(codec, fmt, sample_count, loop=None):
    """Render the TXTH sidecar text.

    Returns:
        str: ``key = value`` lines, each terminated by ``\\n``
    """
    lines = [
        f"num_samples = {sample_count}",
        f"codec = {codec.value}",
        f"channels = {fmt.channels}",
        f"sample_rate = {fmt.sample_rate}",
        f"interleave = {fmt.block_align}",
    ]
    if loop is not None:
        lines.append(f"loop_start_sample = {loop.start}")
        lines.append(f"loop_end_sample = {loop.end}")
    return "".join(line + "\n" for line in lines)


# =============================================================================
# External Encoder
# =============================================================================


class AdpcmEncoder:
    """Runs the external MS ADPCM encoder: ``<tool> <input> <output>``."""

    def __init__(self, path=DEFAULT_ENCODER_PATH, timeout=None):
        """
        Args:
            path: Encoder executable
            timeout: Seconds to wait for the encoder (None = no limit)
        """
        self.path = path
        self.timeout = timeout

    def check(self):
        """Return the resolved encoder path, or raise EncoderMissingError."""
        resolved = shutil.which(self.path)
        if resolved is None:
            raise EncoderMissingError(self.path)
        return resolved

    def encode(self, input_path, output_path):
        """Encode input_path into an ADPCM WAV at output_path.

        Returns:
            int: Encoder exit code
        """
        cmd = [self.path, input_path, output_path]
        logger.debug("Running encoder: %s", cmd)
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout
            )
        except (FileNotFoundError, PermissionError):
            raise EncoderMissingError(self.path) from None
        except subprocess.TimeoutExpired:
            raise EncoderFailedError(
                None, f"The MSADPCM encoder tool timed out after {self.timeout}s."
            ) from None

        if result.stdout:
            logger.debug("Encoder stdout: %s", result.stdout.strip())
        if result.stderr:
            logger.debug("Encoder stderr: %s", result.stderr.strip())
        return result.returncode


# =============================================================================
# Output
# =============================================================================


def default_output_path(input_path):
    """Output path next to the input, with the extension replaced by .raw."""
    return os.path.splitext(input_path)[0] + RAW_SUFFIX


def _write_temp(directory, payload, suffix):
    with tempfile.NamedTemporaryFile(
        mode="wb", dir=directory, prefix=".txthconv-", suffix=suffix, delete=False
    ) as tmp:
        try:
            tmp.write(payload)
        except OSError:
            tmp.close()
            os.remove(tmp.name)
            raise
    return tmp.name


def write_outputs(output_path, data, sidecar):
    """Write the RAW payload and its sidecar as a pair.

    Both files are staged next to their destination and renamed into place,
    sidecar first. If the RAW rename fails the previous sidecar is restored.

    Returns:
        str: Path of the sidecar file

    Raises:
        ConversionError: if either file could not be written
    """
    sidecar_path = output_path + SIDECAR_SUFFIX
    directory = os.path.dirname(os.path.abspath(output_path))
    raw_tmp = None
    sidecar_tmp = None

    try:
        raw_tmp = _write_temp(directory, data, RAW_SUFFIX)
        sidecar_tmp = _write_temp(directory, sidecar.encode("utf-8"), SIDECAR_SUFFIX)

        previous_sidecar = None
        if os.path.isfile(sidecar_path):
            with open(sidecar_path, "rb") as f:
                previous_sidecar = f.read()

        os.replace(sidecar_tmp, sidecar_path)
        sidecar_tmp = None
        try:
            os.replace(raw_tmp, output_path)
            raw_tmp = None
        except OSError:
            if previous_sidecar is None:
                os.remove(sidecar_path)
            else:
                with open(sidecar_path, "wb") as f:
                    f.write(previous_sidecar)
            raise
    except OSError as e:
        raise ConversionError(f"Failed to write output files: {e}") from e
    finally:
        for path in (raw_tmp, sidecar_tmp):
            if path is not None and os.path.exists(path):
                os.remove(path)

    logger.debug("Wrote %s (%d bytes) and %s", output_path, len(data), sidecar_path)
    return sidecar_path


# =============================================================================
# Conversion Pipeline
# =============================================================================


def convert(options, encoder=None, dry_run=False):
    """Convert a WAV file to RAW + TXTH.

    The sample count always comes from the original input file; encoded
    ADPCM files do not carry a reliable one.

    Args:
        options: ConversionOptions
        encoder: Object with ``check()`` and ``encode(input, output) -> int``
            (default: AdpcmEncoder())
        dry_run: Resolve everything but write no files

    Returns:
        ConversionResult

    Raises:
        ConversionError: on any failure; no output files are written
    """
    input_path = options.input_path
    if not os.path.isfile(input_path):
        raise InputNotFoundError(input_path)

    source = read_wave(input_path)
    sample_count = source.sample_count
    if sample_count is None:
        raise MalformedContainerError(
            f"{input_path}: cannot determine the sample count of a "
            f"{source.format.format_name} file without a 'fact' chunk"
        )
    logger.info(
        "Read %s: %s, %d samples", input_path, source.format.format_name, sample_count
    )

    if options.passthrough:
        stream = source
    else:
        stream = _encode(input_path, encoder or AdpcmEncoder())

    codec = validate_format(stream.format)

    loop = None
    if options.loop is not None:
        loop = resolve_loop_points(
            options.loop,
            stream.format,
            sample_count,
            encoded=not options.passthrough,
            policy=options.alignment,
        )

    sidecar = render_sidecar(codec, stream.format, sample_count, loop)
    sidecar_path = options.output_path + SIDECAR_SUFFIX

    if dry_run:
        logger.info("Dry run: nothing written")
    else:
        write_outputs(options.output_path, stream.data, sidecar)

    return ConversionResult(
        codec=codec,
        format=stream.format,
        sample_count=sample_count,
        loop=loop,
        sidecar=sidecar,
        data=stream.data,
        output_path=options.output_path,
        sidecar_path=sidecar_path,
    )


def _encode(input_path, encoder):
    """Run the encoder into a private temp dir and read back its output."""
    encoder.check()

    with tempfile.TemporaryDirectory(prefix="txthconv-") as tmp_dir:
        encoded_path = os.path.join(tmp_dir, "encoded.wav")
        logger.info("Encoding %s to MSADPCM", input_path)
        exit_code = encoder.encode(input_path, encoded_path)
        if exit_code != 0:
            raise EncoderFailedError(exit_code)
        if not os.path.isfile(encoded_path):
            raise EncoderFailedError(
                exit_code, "The MSADPCM encoder tool did not produce an output file."
            )
        return read_wave(encoded_path)


# =============================================================================
# Main Entry Point
# =============================================================================


def prompt_alignment(name, offset, samples_per_block, aligned):
    """Ask on stdin whether to align an unaligned loop point."""
    question = (
        f"The loop {name} point ({offset}) is not aligned to {samples_per_block} "
        f"samples per block. Adjust it to {aligned}? [y]es / [n]o / [c]ancel: "
    )
    while True:
        try:
            answer = input(question).strip().lower()
        except (EOFError, KeyboardInterrupt):
            print("\nAborted.")
            return Alignment.ABORT
        if answer in ("y", "yes"):
            return Alignment.ACCEPT
        if answer in ("n", "no"):
            return Alignment.REJECT
        if answer in ("c", "cancel"):
            return Alignment.ABORT
        print("  Please answer y, n or c.")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Convert a PCM/ADPCM WAV file to a headerless RAW stream and TXTH sidecar.",
        epilog="Writes OUTPUT_RAW and OUTPUT_RAW.txth.",
    )
    parser.add_argument(
        "input_wav",
        metavar="INPUT_WAV",
        help="Path to input WAV file",
    )
    parser.add_argument(
        "output_raw",
        metavar="OUTPUT_RAW",
        nargs="?",
        default=None,
        help="Path to output RAW file (default: INPUT_WAV with .raw extension)",
    )
    parser.add_argument(
        "--loop",
        type=int,
        nargs=2,
        metavar=("START", "END"),
        default=None,
        help="Enable looping between START and END (sample offsets)",
    )
    parser.add_argument(
        "--passthrough",
        "-P",
        action="store_true",
        help="Copy the WAV data as-is instead of encoding to MSADPCM",
    )
    parser.add_argument(
        "--encoder",
        default=DEFAULT_ENCODER_PATH,
        metavar="PATH",
        help=f"MSADPCM encoder executable (default: {DEFAULT_ENCODER_PATH})",
    )
    parser.add_argument(
        "--encoder-timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Give up on the encoder after SECONDS (default: wait forever)",
    )
    parser.add_argument(
        "--align",
        choices=["ask", "accept", "reject", "abort"],
        default="ask",
        help="What to do with loop points not aligned to the ADPCM block size (default: ask)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the TXTH contents without writing any files",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show debug output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )

    output_raw = args.output_raw or default_output_path(args.input_wav)
    if args.align == "ask":
        policy = prompt_alignment
    else:
        policy = Alignment(args.align)

    options = ConversionOptions(
        input_path=args.input_wav,
        output_path=output_raw,
        loop=LoopRequest(*args.loop) if args.loop else None,
        passthrough=args.passthrough,
        alignment=policy,
    )
    encoder = AdpcmEncoder(args.encoder, args.encoder_timeout)

    try:
        result = convert(options, encoder, dry_run=args.dry_run)
    except ConversionError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(result.sidecar, end="")
    if args.dry_run:
        print("\n(dry run, no files written)")
    else:
        print(f"\nOutput: {result.output_path}")
        print(f"  - {len(result.data)} bytes of {result.codec.value} data")
        print(f"  - {result.sidecar_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
