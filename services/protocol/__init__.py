from services.protocol.schema_validation import STREAM_MESSAGE_SCHEMA, ProtocolValidationError, ProtocolValidator
from services.protocol.sse import (
    LegacySSEEncoder,
    SSEDecoder,
    SSEEncoder,
    StreamMessage,
    TypedSSEEncoder,
    build_encoder,
    wire_variant,
)

__all__ = [
    "STREAM_MESSAGE_SCHEMA",
    "LegacySSEEncoder",
    "ProtocolValidationError",
    "ProtocolValidator",
    "SSEDecoder",
    "SSEEncoder",
    "StreamMessage",
    "TypedSSEEncoder",
    "build_encoder",
    "wire_variant",
]
