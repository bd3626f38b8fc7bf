from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from . import app_db
from .config import REPO_ROOT
from .logging_utils import get_logger
from .pdf_export import PdfLayout

log = get_logger(__name__)

DEFAULT_SETTINGS_PATH = REPO_ROOT / "backend" / "default_settings.json"


class SettingsError(RuntimeError):
    pass


def _read_json(path: Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise SettingsError(f"Failed to read settings file {path}: {e}") from e


def load_defaults() -> dict[str, Any]:
    if not DEFAULT_SETTINGS_PATH.exists():
        raise SettingsError(f"Default settings file not found: {DEFAULT_SETTINGS_PATH}")

    raw = _read_json(DEFAULT_SETTINGS_PATH)
    if not isinstance(raw.get("pdf"), dict):
        raise SettingsError("default_settings.json missing 'pdf' section")
    return raw


def get_settings_bundle() -> dict[str, Any]:
    """Defaults from disk, overrides from the database and their top-level overlay."""
    defaults = load_defaults()
    stored = app_db.list_settings()
    return {"defaults": defaults, "settings": stored, "effective": {**defaults, **stored}}


def _merge_missing(dst: Any, src: Any) -> tuple[Any, bool]:
    if not isinstance(dst, dict) or not isinstance(src, dict):
        return dst, False
    changed = False
    out = dict(dst)
    for k, v in src.items():
        if k not in out:
            out[k] = v
            changed = True
        else:
            merged, did = _merge_missing(out[k], v)
            if did:
                out[k] = merged
                changed = True
    return out, changed


def ensure_defaults() -> None:
    bundle = get_settings_bundle()
    defaults: dict[str, Any] = bundle["defaults"]
    settings: dict[str, Any] = bundle["settings"]

    to_set: dict[str, Any] = {}
    for key, value in defaults.items():
        if key not in settings:
            to_set[key] = value
            continue
        # Backfill newly added nested defaults without overwriting user values.
        merged, changed = _merge_missing(settings[key], value)
        if changed:
            to_set[key] = merged

    if to_set:
        log.info("Seeding default settings keys: %s", ", ".join(sorted(to_set.keys())))
        app_db.set_settings(to_set)


def update_settings(new_values: dict[str, Any]) -> dict[str, Any]:
    if "pdf" in new_values:
        pdf_layout_from_settings({"pdf": new_values["pdf"]})
    app_db.set_settings(new_values)
    return get_settings_bundle()


def _positive_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise SettingsError(f"pdf.{key} must be a positive integer, got {value!r}")
    return value


def pdf_settings(effective: dict[str, Any]) -> dict[str, Any]:
    section = effective.get("pdf")
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise SettingsError("pdf settings must be an object/dict")
    return section


def pdf_layout_from_settings(effective: dict[str, Any]) -> PdfLayout:
    section = pdf_settings(effective)
    defaults = PdfLayout()
    try:
        return PdfLayout(
            max_lines_per_page=_positive_int(section, "max_lines_per_page", defaults.max_lines_per_page),
            max_line_width=_positive_int(section, "max_line_width", defaults.max_line_width),
        )
    except ValueError as e:
        raise SettingsError(f"pdf settings do not fit the page: {e}") from e
