"""Process-memory introspection used by the drain loop's memory budget."""

import logging
import os
import re
import sys
from typing import Optional, Union

from .constants import UNLIMITED_MEMORY_LIMIT

logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"^\s*(?P<number>\d+(?:\.\d+)?)\s*(?P<unit>[KMGT]?)B?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_size(value: Union[str, int]) -> int:
    """Convert a shorthand size such as ``"128M"`` into bytes.

    Raises:
        ValueError: If the value is not a recognised size.
    """
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"Unrecognised memory size {value!r}")
    return int(float(match.group("number")) * _UNITS[match.group("unit").upper()])


def current_memory_usage() -> int:
    """Return the resident memory of this process in bytes."""
    try:
        with open("/proc/self/statm", "r", encoding="ascii") as handle:
            resident_pages = int(handle.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        pass
    import resource

    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS and kilobytes elsewhere
    return peak if sys.platform == "darwin" else peak * 1024


def _platform_limit() -> Optional[int]:
    try:
        import resource
    except ImportError:
        return None
    soft, _ = resource.getrlimit(resource.RLIMIT_AS)
    if soft in (resource.RLIM_INFINITY, -1) or soft <= 0:
        return None
    return soft


def memory_limit(override: Optional[Union[str, int]] = None) -> int:
    """Resolve the memory ceiling in bytes.

    Order: explicit override, ``BATCHWORK_MEMORY_LIMIT``, the address-space
    rlimit, and finally a 32000M ceiling for unlimited processes.
    """
    configured = override if override is not None else os.getenv("BATCHWORK_MEMORY_LIMIT")
    if configured not in (None, ""):
        try:
            size = parse_size(configured)
        except ValueError:
            logger.warning("Invalid memory limit %r; ignoring", configured)
        else:
            if size > 0:
                return size
    platform = _platform_limit()
    if platform is not None:
        return platform
    return parse_size(UNLIMITED_MEMORY_LIMIT)
