"""Config codec for cross-process handoff.

Encoded values travel in an environment variable, so the text must be plain
ASCII without raw control characters. JSON with ``ensure_ascii`` escapes both,
and keeps ``null`` apart from ``""``.
"""

import json

from pydantic import BaseModel, TypeAdapter, ValidationError

from ..common.exceptions import DecodeError
from .models import LaunchDescriptor, TunnelConfig

_config_adapter: TypeAdapter[TunnelConfig] = TypeAdapter(TunnelConfig)


def encode(model: BaseModel) -> str:
    """Serialize a config or launch descriptor to an environment-safe string."""
    return json.dumps(
        model.model_dump(mode="json"), ensure_ascii=True, separators=(",", ":")
    )


def decode_config(data: str) -> TunnelConfig:
    """Deserialize a tunnel configuration.

    Raises:
        DecodeError: If the text is not a valid encoded configuration
    """
    try:
        return _config_adapter.validate_json(data)
    except ValidationError as e:
        raise DecodeError(f"invalid tunnel configuration: {e}") from e


def decode_descriptor(data: str) -> LaunchDescriptor:
    """Deserialize a launch descriptor.

    Raises:
        DecodeError: If the text is not a valid encoded descriptor
    """
    try:
        return LaunchDescriptor.model_validate_json(data)
    except ValidationError as e:
        raise DecodeError(f"invalid launch descriptor: {e}") from e
