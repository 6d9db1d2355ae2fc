"""Protocol Buffers message classes for the key export wire format.

The schema is assembled as a ``FileDescriptorProto`` and loaded into a
private descriptor pool, so no ``protoc`` step is needed.  It uses proto2
semantics: optional scalar fields have explicit presence, which is how a
missing rolling period stays absent instead of being written as zero.
"""

from __future__ import annotations

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

from aumai_keyexport.models import DEFAULT_ROLLING_PERIOD

_PACKAGE = "aumai_keyexport"

_Field = descriptor_pb2.FieldDescriptorProto


def _add_field(
    message: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    field_type: int,
    *,
    repeated: bool = False,
    message_type: str | None = None,
    default: str | None = None,
) -> None:
    field = message.field.add(
        name=name,
        number=number,
        type=field_type,
        label=_Field.LABEL_REPEATED if repeated else _Field.LABEL_OPTIONAL,
    )
    if message_type is not None:
        field.type_name = f".{_PACKAGE}.{message_type}"
    if default is not None:
        field.default_value = default


def _schema() -> descriptor_pb2.FileDescriptorProto:
    schema = descriptor_pb2.FileDescriptorProto(
        name="aumai_keyexport/export.proto",
        package=_PACKAGE,
        syntax="proto2",
    )

    export = schema.message_type.add(name="TemporaryExposureKeyExport")
    _add_field(export, "start_timestamp", 1, _Field.TYPE_FIXED64)
    _add_field(export, "end_timestamp", 2, _Field.TYPE_FIXED64)
    _add_field(export, "region", 3, _Field.TYPE_STRING)
    _add_field(export, "batch_num", 4, _Field.TYPE_INT32)
    _add_field(export, "batch_size", 5, _Field.TYPE_INT32)
    _add_field(
        export,
        "signature_infos",
        6,
        _Field.TYPE_MESSAGE,
        repeated=True,
        message_type="SignatureInfo",
    )
    _add_field(
        export,
        "keys",
        7,
        _Field.TYPE_MESSAGE,
        repeated=True,
        message_type="TemporaryExposureKey",
    )

    info = schema.message_type.add(name="SignatureInfo")
    _add_field(info, "app_bundle_id", 1, _Field.TYPE_STRING)
    _add_field(info, "android_package", 2, _Field.TYPE_STRING)
    _add_field(info, "verification_key_version", 3, _Field.TYPE_STRING)
    _add_field(info, "verification_key_id", 4, _Field.TYPE_STRING)
    _add_field(info, "signature_algorithm", 5, _Field.TYPE_STRING)

    key = schema.message_type.add(name="TemporaryExposureKey")
    _add_field(key, "key_data", 1, _Field.TYPE_BYTES)
    _add_field(key, "transmission_risk_level", 2, _Field.TYPE_INT32)
    _add_field(key, "rolling_start_interval_number", 3, _Field.TYPE_INT32)
    _add_field(
        key,
        "rolling_period",
        4,
        _Field.TYPE_INT32,
        default=str(DEFAULT_ROLLING_PERIOD),
    )

    signature_list = schema.message_type.add(name="TEKSignatureList")
    _add_field(
        signature_list,
        "signatures",
        1,
        _Field.TYPE_MESSAGE,
        repeated=True,
        message_type="TEKSignature",
    )

    signature = schema.message_type.add(name="TEKSignature")
    _add_field(
        signature,
        "signature_info",
        1,
        _Field.TYPE_MESSAGE,
        message_type="SignatureInfo",
    )
    _add_field(signature, "batch_num", 2, _Field.TYPE_INT32)
    _add_field(signature, "batch_size", 3, _Field.TYPE_INT32)
    _add_field(signature, "signature", 4, _Field.TYPE_BYTES)

    return schema


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_schema().SerializeToString())


def _message_class(name: str) -> type:
    return message_factory.GetMessageClass(
        _POOL.FindMessageTypeByName(f"{_PACKAGE}.{name}")
    )


TemporaryExposureKeyExport = _message_class("TemporaryExposureKeyExport")
SignatureInfo = _message_class("SignatureInfo")
TemporaryExposureKey = _message_class("TemporaryExposureKey")
TEKSignatureList = _message_class("TEKSignatureList")
TEKSignature = _message_class("TEKSignature")


__all__ = [
    "SignatureInfo",
    "TEKSignature",
    "TEKSignatureList",
    "TemporaryExposureKey",
    "TemporaryExposureKeyExport",
]
