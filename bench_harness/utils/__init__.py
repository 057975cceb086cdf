from .durations import format_duration, parse_duration
from .pathing import rebase_guest_path, remove_tree, resolve_relative, sanitize_name

__all__ = [
    "format_duration",
    "parse_duration",
    "rebase_guest_path",
    "remove_tree",
    "resolve_relative",
    "sanitize_name",
]
