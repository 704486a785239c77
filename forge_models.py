from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

STAT_NAMES = ("health", "strength", "mana", "agility")
STAT_MIN = 1
STAT_MAX = 100

REQUIRED_TEXT_FIELDS = ("name", "class", "description", "image_url")


def clamp_stat(value: Any) -> int:
    try:
        number = int(round(float(value)))
    except Exception:
        number = STAT_MIN
    return max(STAT_MIN, min(STAT_MAX, number))


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


@dataclass(frozen=True)
class Character:
    """A generated fantasy hero. ``backstory`` stays ``None`` until written."""

    name: str
    character_class: str
    description: str
    image_url: str
    health: int
    strength: int
    mana: int
    agility: int
    backstory: Optional[str] = None

    @property
    def has_backstory(self) -> bool:
        return bool(self.backstory)

    @property
    def stats(self) -> Dict[str, int]:
        return {stat: getattr(self, stat) for stat in STAT_NAMES}

    def with_image(self, image_url: str) -> "Character":
        return replace(self, image_url=image_url)

    def with_backstory(self, backstory: str) -> "Character":
        return replace(self, backstory=backstory)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "class": self.character_class,
            "description": self.description,
            "image_url": self.image_url,
            "backstory": self.backstory,
            **self.stats,
        }

    def to_text(self) -> str:
        lines = [
            f"Name: {self.name}",
            f"Class: {self.character_class}",
            "Stats: " + ", ".join(f"{stat.title()} {value}" for stat, value in self.stats.items()),
            "",
            self.description,
        ]
        if self.has_backstory:
            lines += ["", "Backstory:", self.backstory]
        return "\n".join(lines).strip() + "\n"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Character":
        if not isinstance(data, dict):
            raise ValueError("Character data must be an object.")
        text = {
            "name": _pick(data, "name"),
            "class": _pick(data, "class", "character_class", "characterClass"),
            "description": _pick(data, "description"),
            "image_url": _pick(data, "image_url", "imageUrl"),
        }
        missing: List[str] = [key for key in REQUIRED_TEXT_FIELDS if not str(text[key] or "").strip()]
        missing += [stat for stat in STAT_NAMES if data.get(stat) is None]
        if missing:
            raise ValueError(f"Character is missing fields: {', '.join(missing)}")

        stats: Dict[str, int] = {}
        for stat in STAT_NAMES:
            try:
                stats[stat] = int(data[stat])
            except (TypeError, ValueError):
                raise ValueError(f"Stat {stat} must be a whole number, got {data[stat]!r}") from None

        backstory = str(_pick(data, "backstory") or "").strip()
        return cls(
            name=str(text["name"]).strip(),
            character_class=str(text["class"]).strip(),
            description=str(text["description"]).strip(),
            image_url=str(text["image_url"]).strip(),
            backstory=backstory or None,
            **stats,
        )
