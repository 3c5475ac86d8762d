from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any

DEFAULT_SUB_LANGS = "Arabic, French"
DEFAULT_SLOTS = "09:00, 13:00, 18:00"
DEFAULT_DAYS = "Mon-Sun"

# persisted key -> attribute name
_PERSISTED_KEYS = {
    "logo": "logo",
    "subLangs": "sub_langs",
    "slots": "slots",
    "days": "days",
    "nasheed": "nasheed",
    "sfx": "sfx",
}


@dataclass(frozen=True)
class Settings:
    logo: str | None = None            # data URL or file reference
    sub_langs: str = DEFAULT_SUB_LANGS  # default subtitle languages
    slots: str = DEFAULT_SLOTS         # publishing time slots
    days: str = DEFAULT_DAYS           # publishing days
    nasheed: str | None = None         # background audio filename
    sfx: str | None = None             # sound effects filename

    def to_dict(self) -> dict[str, Any]:
        return {
            key: getattr(self, attr)
            for key, attr in _PERSISTED_KEYS.items()
            if getattr(self, attr) is not None
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        """Build Settings from a persisted record, ignoring unknown keys."""
        values: dict[str, Any] = {}
        for key, attr in _PERSISTED_KEYS.items():
            value = data.get(key, data.get(attr))
            if value is not None:
                values[attr] = str(value)
        return cls(**values)

    def pass_through_options(self) -> dict[str, str]:
        """Settings copied onto each new job. The logo is too large to copy."""
        return {
            name: value
            for name, value in asdict(self).items()
            if name != "logo" and value is not None
        }


SETTINGS_FIELDS = frozenset(f.name for f in fields(Settings))
