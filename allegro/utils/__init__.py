import os


def derived_path(kind: str, entity_id: int) -> str:
    """Return the image/file name for an entity, e.g. ``release-12``."""
    return f"{kind}-{entity_id}"


def clean_name(name: str | None) -> str:
    """Return ``name`` stripped of surrounding whitespace."""
    return (name or "").strip()


def env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")
