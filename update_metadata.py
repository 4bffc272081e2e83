"""
Manifest schema for update_engine payloads (chromeos_update_engine, proto2)

The message classes are built from descriptors at import time, so no protoc
step or generated update_metadata_pb2.py is needed. Only the fields the
extractor reads are declared; anything else in a real manifest is kept as
unknown fields and ignored.
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory
from google.protobuf.message import DecodeError

PACKAGE = 'chromeos_update_engine'

_F = descriptor_pb2.FieldDescriptorProto

OP_TYPES = {
    'REPLACE': 0, 'REPLACE_BZ': 1, 'MOVE': 2, 'BSDIFF': 3, 'SOURCE_COPY': 4,
    'SOURCE_BSDIFF': 5, 'ZERO': 6, 'DISCARD': 7, 'REPLACE_XZ': 8,
    'PUFFDIFF': 9, 'BROTLI_BSDIFF': 10, 'ZUCCHINI': 11, 'LZ4DIFF_BSDIFF': 12,
    'LZ4DIFF_PUFFDIFF': 13, 'ZSTD': 14,
}


def _field(msg, name: str, number: int, ftype: int, label: int = _F.LABEL_OPTIONAL,
           type_name: str = None, default: str = None):
    field = msg.field.add(name=name, number=number, type=ftype, label=label)
    if type_name:
        field.type_name = f'.{PACKAGE}.{type_name}'
    if default is not None:
        field.default_value = default


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(
        name='update_metadata.proto', package=PACKAGE, syntax='proto2')

    extent = fdp.message_type.add(name='Extent')
    _field(extent, 'start_block', 1, _F.TYPE_UINT64)
    _field(extent, 'num_blocks', 2, _F.TYPE_UINT64)

    sigs = fdp.message_type.add(name='Signatures')
    sig = sigs.nested_type.add(name='Signature')
    _field(sig, 'version', 1, _F.TYPE_UINT32)
    _field(sig, 'data', 2, _F.TYPE_BYTES)
    _field(sig, 'unpadded_signature_size', 3, _F.TYPE_FIXED32)
    _field(sigs, 'signatures', 1, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, 'Signatures.Signature')

    info = fdp.message_type.add(name='PartitionInfo')
    _field(info, 'size', 1, _F.TYPE_UINT64)
    _field(info, 'hash', 2, _F.TYPE_BYTES)

    op = fdp.message_type.add(name='InstallOperation')
    # plain varint rather than a closed enum, so unknown type tags survive decoding
    _field(op, 'type', 1, _F.TYPE_UINT32, _F.LABEL_REQUIRED)
    _field(op, 'data_offset', 2, _F.TYPE_UINT64)
    _field(op, 'data_length', 3, _F.TYPE_UINT64)
    _field(op, 'src_extents', 4, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, 'Extent')
    _field(op, 'src_length', 5, _F.TYPE_UINT64)
    _field(op, 'dst_extents', 6, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, 'Extent')
    _field(op, 'dst_length', 7, _F.TYPE_UINT64)
    _field(op, 'data_sha256_hash', 8, _F.TYPE_BYTES)
    _field(op, 'src_sha256_hash', 9, _F.TYPE_BYTES)

    part = fdp.message_type.add(name='PartitionUpdate')
    _field(part, 'partition_name', 1, _F.TYPE_STRING, _F.LABEL_REQUIRED)
    _field(part, 'old_partition_info', 6, _F.TYPE_MESSAGE, type_name='PartitionInfo')
    _field(part, 'new_partition_info', 7, _F.TYPE_MESSAGE, type_name='PartitionInfo')
    _field(part, 'operations', 8, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, 'InstallOperation')

    dam = fdp.message_type.add(name='DeltaArchiveManifest')
    _field(dam, 'block_size', 3, _F.TYPE_UINT32, default='4096')
    _field(dam, 'signatures_offset', 4, _F.TYPE_UINT64)
    _field(dam, 'signatures_size', 5, _F.TYPE_UINT64)
    _field(dam, 'minor_version', 12, _F.TYPE_UINT32, default='0')
    _field(dam, 'partitions', 13, _F.TYPE_MESSAGE, _F.LABEL_REPEATED, 'PartitionUpdate')
    _field(dam, 'max_timestamp', 14, _F.TYPE_INT64)
    _field(dam, 'partial_update', 16, _F.TYPE_BOOL)
    _field(dam, 'security_patch_level', 18, _F.TYPE_STRING)
    return fdp


# Private pool so an installed update_metadata_pb2 cannot clash with ours
_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_build_file().SerializeToString())


def _message(name: str):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f'{PACKAGE}.{name}'))


Extent = _message('Extent')
Signatures = _message('Signatures')
PartitionInfo = _message('PartitionInfo')
InstallOperation = _message('InstallOperation')
PartitionUpdate = _message('PartitionUpdate')
DeltaArchiveManifest = _message('DeltaArchiveManifest')

REPLACE = OP_TYPES['REPLACE']
REPLACE_BZ = OP_TYPES['REPLACE_BZ']
REPLACE_XZ = OP_TYPES['REPLACE_XZ']
ZERO = OP_TYPES['ZERO']

_OP_NAMES = {number: name for name, number in OP_TYPES.items()}


def op_type_name(op_type: int) -> str:
    """Symbolic name of an operation type, or the number if unknown"""
    return _OP_NAMES.get(op_type, str(op_type))


def parse_manifest(data: bytes):
    """Decode a DeltaArchiveManifest, raising DecodeError on malformed bytes"""
    manifest = DeltaArchiveManifest()
    manifest.ParseFromString(data)
    # required fields (partition_name, operation type) must be present
    if not manifest.IsInitialized():
        missing = ', '.join(manifest.FindInitializationErrors())
        raise DecodeError(f"Manifest is missing required fields: {missing}")
    return manifest


def parse_signatures(data: bytes):
    """Decode a Signatures block, raising DecodeError on malformed bytes"""
    signatures = Signatures()
    signatures.ParseFromString(data)
    return signatures


__all__ = [
    'DecodeError', 'DeltaArchiveManifest', 'Extent', 'InstallOperation',
    'PartitionInfo', 'PartitionUpdate', 'Signatures', 'OP_TYPES',
    'REPLACE', 'REPLACE_BZ', 'REPLACE_XZ', 'ZERO',
    'op_type_name', 'parse_manifest', 'parse_signatures',
]
