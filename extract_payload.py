#!/usr/bin/env python3
"""
Android payload.bin extractor
Extracts full partition images from OTA payload.bin files (Brillo/AOSP format)
The manifest is decoded with protobuf, see update_metadata.py
"""

import argparse
import bz2
import hashlib
import logging
import lzma
import struct
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional

import update_metadata as um

PAYLOAD_MAGIC = b'CrAU'
SUPPORTED_VERSION = 2
CHUNK_SIZE = 1024 * 1024  # read, hash and decompress granularity

logger = logging.getLogger(__name__)


class PayloadError(Exception):
    """Base class for every extraction failure"""


class BadMagic(PayloadError):
    pass


class UnsupportedVersion(PayloadError):
    pass


class TruncatedHeader(PayloadError):
    pass


class DecodeError(PayloadError):
    """Manifest or metadata signature could not be decoded"""


class PayloadIOError(PayloadError):
    pass


class SeekError(PayloadIOError):
    pass


class TruncatedRead(PayloadIOError):
    """Fewer bytes available than an operation declares"""


class HashMismatch(PayloadError):
    def __init__(self, expected: bytes, computed: bytes):
        self.expected = expected.hex()
        self.computed = computed.hex()
        super().__init__(f"SHA256 failed for operation, expected {self.expected}, "
                         f"calculated {self.computed}")


class UnsupportedOperation(PayloadError):
    pass


class DecompressError(PayloadError):
    pass


class PartitionError(PayloadError):
    """A partition could not be dumped; the cause is chained as __cause__"""

    def __init__(self, partition: str, message: str, index: Optional[int] = None):
        self.partition = partition
        self.index = index
        where = f"operation {index}: " if index is not None else ''
        super().__init__(f"Failed to dump partition '{partition}': {where}{message}")


@dataclass
class PayloadHeader:
    version: int
    manifest_size: int
    metadata_signature_size: int = 0


@dataclass
class Payload:
    """Open payload with decoded manifest and located data section"""
    path: Path
    file: BinaryIO
    header: PayloadHeader
    manifest: object
    signatures: object = None
    data_offset: int = 0

    @property
    def block_size(self) -> int:
        return self.manifest.block_size

    @property
    def partitions(self) -> list:
        return list(self.manifest.partitions)

    def close(self):
        self.file.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _read_header_field(f: BinaryIO, size: int, what: str) -> bytes:
    data = f.read(size)
    if len(data) != size:
        raise TruncatedHeader(f"Failed to read {what}: got {len(data)} of {size} bytes")
    return data


def parse_header(f: BinaryIO) -> PayloadHeader:
    """Read the fixed header from a stream positioned at offset 0"""
    magic = _read_header_field(f, 4, 'magic')
    if magic != PAYLOAD_MAGIC:
        raise BadMagic(f"Invalid payload format, bad magic: {magic!r}")

    version = struct.unpack('>Q', _read_header_field(f, 8, 'version'))[0]
    manifest_size = struct.unpack('>Q', _read_header_field(f, 8, 'manifest size'))[0]

    # only the partition (version 2) format is handled
    if version != SUPPORTED_VERSION:
        raise UnsupportedVersion(
            f"Invalid payload version {version}, only version {SUPPORTED_VERSION} supported")

    signature_size = struct.unpack('>I', _read_header_field(f, 4, 'metadata signature size'))[0]
    return PayloadHeader(version, manifest_size, signature_size)


def _read_block(f: BinaryIO, size: int, what: str) -> bytes:
    try:
        data = f.read(size)
    except OSError as e:
        raise PayloadIOError(f"Failed to read {what}: {e}") from e
    if len(data) != size:
        raise PayloadIOError(f"Failed to read {what}: got {len(data)} of {size} bytes")
    return data


def _decode(decoder: Callable[[bytes], object], data: bytes, what: str):
    try:
        return decoder(data)
    except (um.DecodeError, ValueError) as e:
        raise DecodeError(f"Failed to decode {what}: {e}") from e


def open_payload(path, manifest_decoder: Callable[[bytes], object] = um.parse_manifest,
                 signature_decoder: Callable[[bytes], object] = um.parse_signatures) -> Payload:
    """
    Open payload.bin, decode header, manifest and metadata signature.

    The decoders turn the raw manifest / signature bytes into message objects
    and raise DecodeError or ValueError on malformed input. The signature is
    decoded but not verified. The returned Payload keeps the file open; close
    it or use it as a context manager.
    """
    path = Path(path)
    try:
        f = open(path, 'rb')
    except OSError as e:
        raise PayloadIOError(f"Failed to open {path}: {e}") from e

    try:
        header = parse_header(f)
        manifest = _decode(manifest_decoder, _read_block(f, header.manifest_size, 'manifest'),
                           'manifest')
        signatures = None
        if header.metadata_signature_size > 0:
            raw = _read_block(f, header.metadata_signature_size, 'metadata signature')
            signatures = _decode(signature_decoder, raw, 'metadata signature')
        try:
            data_offset = f.tell()
        except OSError as e:
            raise PayloadIOError(f"Failed to record offset of data start: {e}") from e
    except Exception:
        f.close()
        raise

    logger.debug("Header version %d, manifest size %d, metadata signature size %d, data at %d",
                 header.version, header.manifest_size, header.metadata_signature_size, data_offset)
    return Payload(path=path, file=f, header=header, manifest=manifest,
                   signatures=signatures, data_offset=data_offset)


def scratch_size(manifest) -> int:
    """Bytes needed to hold the largest destination extent in the manifest"""
    largest = max((e.num_blocks
                   for part in manifest.partitions
                   for op in part.operations
                   for e in op.dst_extents), default=0)
    return largest * manifest.block_size


def _read_into(f: BinaryIO, view: memoryview, hasher) -> None:
    length = len(view)
    pos = 0
    while pos < length:
        try:
            n = f.readinto(view[pos:min(pos + CHUNK_SIZE, length)])
        except OSError as e:
            raise PayloadIOError(f"Failed to read install operation: {e}") from e
        if not n:
            raise TruncatedRead(f"Read {pos} bytes, expecting {length}")
        if hasher is not None:
            hasher.update(view[pos:pos + n])
        pos += n


def _copy(data: memoryview) -> Iterator[memoryview]:
    for start in range(0, len(data), CHUNK_SIZE):
        yield data[start:start + CHUNK_SIZE]


def _inflate(dec, chunk) -> bytes:
    try:
        return dec.decompress(chunk, CHUNK_SIZE)
    except (lzma.LZMAError, OSError, EOFError) as e:
        raise DecompressError(f"Failed to decode compressed stream: {e}") from e


def _decompress(data: memoryview, factory, stream_padding: bool = False) -> Iterator[bytes]:
    """
    Stream data through a fresh decompressor, following concatenated streams.

    With stream_padding, runs of null bytes after a stream are skipped as long
    as each run is a multiple of four bytes long (xz stream padding).
    """
    dec = factory()
    padding = 0
    for start in range(0, len(data), CHUNK_SIZE):
        pending = data[start:start + CHUNK_SIZE]
        while pending:
            if dec.eof:
                if stream_padding:
                    stripped = bytes(pending).lstrip(b'\0')
                    padding += len(pending) - len(stripped)
                    pending = stripped
                    if not pending:
                        break
                    if padding % 4:
                        raise DecompressError(f"Invalid xz stream padding of {padding} bytes")
                    padding = 0
                dec = factory()
            out = _inflate(dec, pending)
            while True:
                if out:
                    yield out
                if dec.eof or dec.needs_input:
                    break
                out = _inflate(dec, b'')
            pending = dec.unused_data if dec.eof else b''
    if not dec.eof:
        raise DecompressError("Compressed stream ended before its end-of-stream marker")
    if padding % 4:
        raise DecompressError(f"Invalid xz stream padding of {padding} bytes")


_DECOMPRESSORS = {
    um.REPLACE_XZ: lzma.LZMADecompressor,
    um.REPLACE_BZ: bz2.BZ2Decompressor,
}


def _emit(op_type: int, data: memoryview) -> Iterator:
    if op_type == um.REPLACE:
        return _copy(data)
    factory = _DECOMPRESSORS.get(op_type)
    if factory is None:
        raise UnsupportedOperation(
            f"Unimplemented install operation type: {um.op_type_name(op_type)}")
    return _decompress(data, factory, stream_padding=op_type == um.REPLACE_XZ)


def _write(output: BinaryIO, chunk) -> int:
    size = len(chunk)
    try:
        n = output.write(chunk)
    except OSError as e:
        raise PayloadIOError(f"Error copying install operation to output file: {e}") from e
    if n is not None and n != size:
        raise PayloadIOError(f"Short write to output file: {n} of {size} bytes")
    return size


def perform_operation(payload: Payload, op, output: BinaryIO, scratch: bytearray) -> int:
    """
    Read one install operation's data, verify and decode it, append to output.

    scratch is reused across calls. Returns the number of bytes written.
    Nothing is written when the data hash does not match.
    """
    length = op.data_length
    buf = scratch
    if len(scratch) < length:
        # compressed data may exceed its destination extents
        logger.debug("Operation needs %d bytes, scratch holds %d", length, len(scratch))
        buf = bytearray(length)

    try:
        payload.file.seek(payload.data_offset + op.data_offset)
    except (OSError, ValueError) as e:
        raise SeekError(f"Failed to seek to install operation start: {e}") from e

    hasher = hashlib.sha256() if op.data_sha256_hash else None
    data = memoryview(buf)[:length]
    _read_into(payload.file, data, hasher)

    if hasher is not None:
        digest = hasher.digest()
        if digest != op.data_sha256_hash:
            raise HashMismatch(op.data_sha256_hash, digest)

    written = 0
    for chunk in _emit(op.type, data):
        written += _write(output, chunk)
    return written


def dump_partition(payload: Payload, partition, output: BinaryIO, scratch: bytearray) -> int:
    """Run every operation of a partition in manifest order, return bytes written"""
    name = partition.partition_name
    total = len(partition.operations)
    written = 0
    for i, op in enumerate(partition.operations):
        logger.debug("  %s [%d/%d] %s offset=%d length=%d", name, i + 1, total,
                     um.op_type_name(op.type), op.data_offset, op.data_length)
        try:
            written += perform_operation(payload, op, output, scratch)
        except PayloadError as e:
            raise PartitionError(name, f"{type(e).__name__}: {e}", index=i) from e
    return written


def select_partitions(payload: Payload, names: Optional[list] = None) -> list:
    """Partitions to dump in manifest order, all of them when names is empty"""
    if not names:
        return payload.partitions
    available = {p.partition_name for p in payload.partitions}
    missing = [n for n in names if n not in available]
    if missing:
        raise PayloadError(f"Partition(s) not found: {', '.join(missing)}. "
                           f"Available: {', '.join(sorted(available))}")
    wanted = set(names)
    return [p for p in payload.partitions if p.partition_name in wanted]


def image_name(partition_name: str) -> str:
    if partition_name in ('', '.', '..') or Path(partition_name).name != partition_name \
            or '\\' in partition_name:
        raise PartitionError(partition_name, "name is not a plain file name")
    return f"{partition_name}.img"


def dump_payload(payload: Payload, output_dir, names: Optional[list] = None) -> list:
    """
    Dump partitions to <output_dir>/<name>.img, one after another.

    Existing images are overwritten. Stops at the first failing partition;
    images already dumped stay on disk and the failing one may be partial.
    Returns the paths written.
    """
    partitions = select_partitions(payload, names)
    scratch = bytearray(scratch_size(payload.manifest))
    logger.info("Payload contains %d partitions, extracting %d",
                len(payload.manifest.partitions), len(partitions))
    logger.debug("Scratch buffer of %d bytes", len(scratch))

    written = []
    for part in partitions:
        name = part.partition_name
        out = Path(output_dir) / image_name(name)
        logger.info("Dumping partition '%s' to %s", name, out)
        try:
            f_out = open(out, 'wb')
        except OSError as e:
            raise PartitionError(name, f"Failed to create output file {out}: {e}") from e
        with f_out:
            size = dump_partition(payload, part, f_out, scratch)
        logger.info("  Done: %s", format_size(size))
        written.append(out)
    return written


def format_size(size: int) -> str:
    """Format byte size for display"""
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024 or unit == 'GB':
            return f"{size:.2f} {unit}" if unit != 'B' else f"{size} B"
        size /= 1024


def cmd_list(payload: Payload):
    """List partitions"""
    print(f"Payload: {payload.path}")
    print(f"Block size: {payload.block_size}")
    print(f"Partitions: {len(payload.partitions)}\n")

    print(f"{'Name':<24} {'Size':>12} {'Ops':>6}")
    print("-" * 44)
    for p in payload.partitions:
        print(f"{p.partition_name:<24} {format_size(p.new_partition_info.size):>12} "
              f"{len(p.operations):>6}")


def cmd_extract(payload: Payload, names: Optional[list], output_dir: Path) -> list:
    """Extract partitions"""
    output_dir.mkdir(parents=True, exist_ok=True)
    written = dump_payload(payload, output_dir, names)
    logger.info("All done.")
    return written


def main(argv=None):
    ap = argparse.ArgumentParser(
        description='Extract partition images from Android payload.bin',
        epilog="Examples:\n"
               "  %(prog)s payload.bin -l\n"
               "  %(prog)s payload.bin -o ./out\n"
               "  %(prog)s payload.bin -p boot init_boot -o ./out\n",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    ap.add_argument('payload', type=Path)
    ap.add_argument('-l', '--list', action='store_true', help='List partitions')
    ap.add_argument('-p', '--partitions', nargs='+', metavar='NAME',
                    help='Extract only these partition(s)')
    ap.add_argument('-o', '--output', type=Path, default=Path('.'), help='Output directory')
    ap.add_argument('-v', '--verbose', action='store_true', help='Log every install operation')
    args = ap.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(message)s')

    if not args.payload.exists():
        sys.exit(f"Error: {args.payload} not found")

    try:
        with open_payload(args.payload) as payload:
            logger.info("Detected payload version %d", payload.header.version)
            if args.list:
                cmd_list(payload)
            else:
                cmd_extract(payload, args.partitions, args.output)
    except (PayloadError, OSError) as e:
        sys.exit(f"Error: {e}")


if __name__ == '__main__':
    main()
