import json
import os
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from clubhub.settings.models import AppModel
from clubhub.utils import data_dir_path

ENV_PREFIX = "CLUBHUB"


class SettingsManager:
    """
    Loads ``settings.json`` from the data directory.

    Values missing from the file fall back to the model defaults, and
    ``CLUBHUB_<SECTION>_<KEY>`` environment variables win over both. The
    resolved settings are written back so operators can see what a worker
    actually runs with.
    """

    def __init__(self, data_dir: Path | None = None):
        self.filename = os.environ.get("CLUBHUB_SETTINGS_FILENAME", "settings.json")
        self.data_dir = Path(data_dir) if data_dir else data_dir_path
        self.settings_file = self.data_dir / self.filename
        self.load()

    def load(self) -> AppModel:
        stored: dict[str, Any] = {}
        if self.settings_file.exists():
            try:
                stored = json.loads(self.settings_file.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing settings file {self.settings_file}: {e}")
                raise
        else:
            logger.info(f"Settings file {self.settings_file} not found, using defaults")

        values = deep_merge(AppModel().model_dump(mode="json"), stored)
        self.settings = self._validate(apply_environment(values, ENV_PREFIX))
        self.save()
        return self.settings

    def _validate(self, values: dict) -> AppModel:
        try:
            return AppModel.model_validate(values)
        except ValidationError as e:
            logger.error(f"Settings validation failed:\n{format_validation_error(e)}")
            raise

    def save(self) -> None:
        os.makedirs(self.data_dir, exist_ok=True)
        self.settings_file.write_text(self.settings.model_dump_json(indent=4), encoding="utf-8")


def deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_environment(values: dict, prefix: str) -> dict:
    """Overlay ``<PREFIX>_<SECTION>_<KEY>`` environment variables onto nested settings."""
    result = {}
    for key, value in values.items():
        name = f"{prefix}_{key}".upper()
        if isinstance(value, dict):
            result[key] = apply_environment(value, name)
            continue
        raw = os.getenv(name)
        result[key] = _coerce(raw, value) if raw else value
    return result


def _coerce(raw: str, current: Any) -> Any:
    # bool before int, bool is an int subclass
    if isinstance(current, bool):
        return raw.lower() in ("true", "1", "yes")
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, (list, dict)):
        return json.loads(raw)
    return raw


def format_validation_error(e: ValidationError) -> str:
    """Format validation errors in a user-friendly way"""
    messages = []
    for error in e.errors():
        field = ".".join(str(x) for x in error["loc"])
        messages.append(f"• {field}: {error.get('msg')}")
    return "\n".join(messages)
