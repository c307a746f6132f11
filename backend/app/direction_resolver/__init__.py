from app.direction_resolver.resolver import UNKNOWN_EXTERNAL, resolve_direction

__all__ = ["UNKNOWN_EXTERNAL", "resolve_direction"]
