import hashlib
import struct

import pytest

import update_metadata as um

BLOCK_SIZE = 4096


def make_op(op_type, data_offset, data_length, num_blocks=1, sha256=None):
    op = um.InstallOperation(type=op_type, data_offset=data_offset, data_length=data_length)
    op.dst_extents.add(start_block=0, num_blocks=num_blocks)
    if sha256 is not None:
        op.data_sha256_hash = sha256
    return op


class PayloadBuilder:
    """Assembles a synthetic payload.bin: header, manifest, signature, data blob"""

    def __init__(self, block_size=BLOCK_SIZE):
        self.manifest = um.DeltaArchiveManifest(block_size=block_size)
        self.blob = bytearray()
        self.signature = b''

    def add_partition(self, name, size=0):
        part = self.manifest.partitions.add(partition_name=name)
        part.new_partition_info.size = size
        return part

    def add_op(self, part, op_type, payload, num_blocks=1, hashed=True, sha256=None):
        """Append payload to the blob and describe it as an operation of part"""
        if sha256 is None and hashed:
            sha256 = hashlib.sha256(payload).digest()
        op = part.operations.add()
        op.CopyFrom(make_op(op_type, len(self.blob), len(payload), num_blocks, sha256))
        self.blob += payload
        return op

    def build(self, magic=b'CrAU', version=2, truncate_blob=0):
        manifest = self.manifest.SerializeToString()
        header = magic + struct.pack('>QQ', version, len(manifest))
        header += struct.pack('>I', len(self.signature))
        blob = bytes(self.blob[:len(self.blob) - truncate_blob])
        return header + manifest + self.signature + blob

    def write(self, path, **kwargs):
        path.write_bytes(self.build(**kwargs))
        return path


@pytest.fixture
def builder():
    return PayloadBuilder()


@pytest.fixture
def out_dir(tmp_path):
    path = tmp_path / 'out'
    path.mkdir()
    return path
