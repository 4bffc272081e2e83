import bz2
import hashlib
import io
import lzma

import pytest

import extract_payload
import update_metadata as um
from extract_payload import (DecompressError, HashMismatch, PayloadIOError, SeekError,
                             TruncatedRead, UnsupportedOperation, open_payload,
                             perform_operation)

PLAINTEXT = b'The quick brown fox jumps over the lazy dog. ' * 200 + bytes(range(256))


@pytest.fixture
def run_op(builder, tmp_path):
    """Build a payload with one operation, execute it, return the output bytes"""
    def run(op_type, data, scratch=None, **kwargs):
        part = builder.add_partition('boot')
        builder.add_op(part, op_type, data, **kwargs)
        with open_payload(builder.write(tmp_path / 'payload.bin')) as payload:
            output = io.BytesIO()
            if scratch is None:
                scratch = bytearray(payload.block_size)
            written = perform_operation(payload, part.operations[0], output, scratch)
        assert written == len(output.getvalue())
        return output.getvalue()
    return run


def test_replace_is_identity(run_op):
    data = bytes(range(16))
    assert run_op(um.REPLACE, data) == data


def test_replace_without_hash(run_op):
    assert run_op(um.REPLACE, b'unhashed', hashed=False) == b'unhashed'


@pytest.mark.parametrize('op_type, compress', [
    (um.REPLACE_XZ, lzma.compress),
    (um.REPLACE_BZ, bz2.compress),
])
def test_compressed_round_trip(run_op, op_type, compress):
    assert run_op(op_type, compress(PLAINTEXT), num_blocks=4) == PLAINTEXT


@pytest.mark.parametrize('op_type, compress', [
    (um.REPLACE_XZ, lzma.compress),
    (um.REPLACE_BZ, bz2.compress),
])
def test_small_chunks(run_op, monkeypatch, op_type, compress):
    monkeypatch.setattr(extract_payload, 'CHUNK_SIZE', 7)
    assert run_op(op_type, compress(PLAINTEXT), num_blocks=4) == PLAINTEXT


def test_concatenated_xz_streams(run_op, monkeypatch):
    monkeypatch.setattr(extract_payload, 'CHUNK_SIZE', 64)
    data = lzma.compress(b'first stream ') + lzma.compress(b'second stream')
    assert run_op(um.REPLACE_XZ, data) == b'first stream second stream'


def test_truncated_compressed_stream(run_op):
    data = lzma.compress(PLAINTEXT)
    with pytest.raises(DecompressError):
        run_op(um.REPLACE_XZ, data[:len(data) // 2])


def test_corrupt_compressed_stream(run_op):
    with pytest.raises(DecompressError):
        run_op(um.REPLACE_BZ, b'definitely not bzip2 data')


def test_hash_mismatch_writes_nothing(builder, tmp_path):
    part = builder.add_partition('boot')
    bogus = hashlib.sha256(b'something else').digest()
    builder.add_op(part, um.REPLACE, b'payload data', sha256=bogus)
    output = io.BytesIO()
    with open_payload(builder.write(tmp_path / 'payload.bin')) as payload:
        with pytest.raises(HashMismatch) as exc:
            perform_operation(payload, part.operations[0], output, bytearray(16))
    assert output.getvalue() == b''
    assert exc.value.expected == bogus.hex()
    assert exc.value.computed == hashlib.sha256(b'payload data').hexdigest()
    assert bogus.hex() in str(exc.value)


def test_unsupported_operation(run_op):
    with pytest.raises(UnsupportedOperation, match='ZERO'):
        run_op(um.ZERO, b'', hashed=False)


def test_truncated_read(builder, tmp_path):
    part = builder.add_partition('boot')
    builder.add_op(part, um.REPLACE, b'0123456789abcdef')
    path = builder.write(tmp_path / 'payload.bin', truncate_blob=4)
    with open_payload(path) as payload:
        with pytest.raises(TruncatedRead, match='expecting 16'):
            perform_operation(payload, part.operations[0], io.BytesIO(), bytearray(16))


def test_undersized_scratch_does_not_truncate(run_op):
    scratch = bytearray(4)
    data = bytes(range(64))
    assert run_op(um.REPLACE, data, scratch=scratch) == data
    assert len(scratch) == 4


def test_scratch_is_reused_between_operations(builder, tmp_path):
    part = builder.add_partition('boot')
    builder.add_op(part, um.REPLACE, b'A' * 32)
    builder.add_op(part, um.REPLACE, b'B' * 8)
    scratch = bytearray(64)
    output = io.BytesIO()
    with open_payload(builder.write(tmp_path / 'payload.bin')) as payload:
        for op in part.operations:
            perform_operation(payload, op, output, scratch)
    assert output.getvalue() == b'A' * 32 + b'B' * 8


def test_operations_are_independently_repeatable(builder, tmp_path):
    part = builder.add_partition('boot')
    builder.add_op(part, um.REPLACE, b'first')
    builder.add_op(part, um.REPLACE, b'second')
    output = io.BytesIO()
    with open_payload(builder.write(tmp_path / 'payload.bin')) as payload:
        for op in (part.operations[1], part.operations[0], part.operations[1]):
            perform_operation(payload, op, output, bytearray(16))
    assert output.getvalue() == b'secondfirstsecond'


def test_seek_failure(builder, tmp_path):
    part = builder.add_partition('boot')
    builder.add_op(part, um.REPLACE, b'data')
    payload = open_payload(builder.write(tmp_path / 'payload.bin'))
    payload.close()
    with pytest.raises(SeekError):
        perform_operation(payload, part.operations[0], io.BytesIO(), bytearray(16))


@pytest.mark.parametrize('chunk_size', [1024 * 1024, 3])
def test_xz_stream_padding(run_op, monkeypatch, chunk_size):
    monkeypatch.setattr(extract_payload, 'CHUNK_SIZE', chunk_size)
    data = lzma.compress(b'hello') + b'\0' * 4 + lzma.compress(b' world') + b'\0' * 8
    assert run_op(um.REPLACE_XZ, data) == b'hello world'


def test_xz_padding_must_be_multiple_of_four(run_op):
    with pytest.raises(DecompressError, match='padding'):
        run_op(um.REPLACE_XZ, lzma.compress(b'hello') + b'\0' * 3)


def test_bz2_rejects_trailing_nulls(run_op):
    with pytest.raises(DecompressError):
        run_op(um.REPLACE_BZ, bz2.compress(b'hello') + b'\0' * 4)


class ShortWriter(io.BytesIO):
    def write(self, data):
        return super().write(bytes(data)[:-1])


class FailingWriter(io.BytesIO):
    def write(self, data):
        raise OSError(28, 'No space left on device')


@pytest.mark.parametrize('sink', [ShortWriter, FailingWriter])
def test_output_write_failure(builder, tmp_path, sink):
    part = builder.add_partition('boot')
    builder.add_op(part, um.REPLACE, b'0123456789abcdef')
    with open_payload(builder.write(tmp_path / 'payload.bin')) as payload:
        with pytest.raises(PayloadIOError):
            perform_operation(payload, part.operations[0], sink(), bytearray(16))
