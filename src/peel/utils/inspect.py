"""Image config parsing shared by every backend."""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from ..exceptions import FormatError

# Docker writes nanosecond timestamps; datetime accepts at most microseconds.
_FRACTION = re.compile(r"(\.\d{6})\d+")


@dataclass(frozen=True)
class HistoryEntry:
    created_by: Optional[str]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class ImageConfig:
    """The parts of an image config the inspectors need."""

    architecture: Optional[str]
    os: Optional[str]
    diff_ids: list[str]
    history: list[HistoryEntry]

    def layer_history(self, index: int) -> HistoryEntry:
        """History of the index-th non-empty layer (blank if not recorded)."""
        if 0 <= index < len(self.history):
            return self.history[index]
        return HistoryEntry(created_by=None, created_at=None)


def parse_created_timestamp(value: Any) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as written in image configs."""
    if not isinstance(value, str) or not value:
        return None
    text = _FRACTION.sub(r"\1", value.replace("Z", "+00:00"))
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def get_layer_history(config_data: dict[str, Any]) -> list[HistoryEntry]:
    """Return history entries that produced a layer, oldest first."""
    history = config_data.get("history") or []
    return [
        HistoryEntry(
            created_by=entry.get("created_by"),
            created_at=parse_created_timestamp(entry.get("created")),
        )
        for entry in history
        if isinstance(entry, dict) and not entry.get("empty_layer", False)
    ]


def get_diff_ids(config_data: dict[str, Any]) -> list[str]:
    rootfs = config_data.get("rootfs") or {}
    diff_ids = rootfs.get("diff_ids", [])
    if not isinstance(diff_ids, list):
        raise FormatError("rootfs.diff_ids must be a list")
    return [str(diff_id) for diff_id in diff_ids]


def parse_image_config(
    raw: Union[bytes, str, dict[str, Any]], source: str = "config"
) -> ImageConfig:
    """Parse image config JSON into an ImageConfig.

    Args:
        raw: Config JSON (bytes, text or already decoded)
        source: Name used in error messages

    Raises:
        FormatError: If the config is not a JSON object
    """
    if isinstance(raw, dict):
        config_data = raw
    else:
        try:
            config_data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FormatError(f"Invalid JSON in image config: {e}", path=source) from e

    if not isinstance(config_data, dict):
        raise FormatError("Image config must be a JSON object", path=source)

    return ImageConfig(
        architecture=config_data.get("architecture"),
        os=config_data.get("os"),
        diff_ids=get_diff_ids(config_data),
        history=get_layer_history(config_data),
    )


def command_from_v1(layer_json: dict[str, Any]) -> Optional[str]:
    """Reconstruct created_by from a legacy v1 layer json file."""
    container_config = layer_json.get("container_config") or {}
    cmd = container_config.get("Cmd")
    if isinstance(cmd, list) and cmd:
        return " ".join(str(part) for part in cmd)
    return None
