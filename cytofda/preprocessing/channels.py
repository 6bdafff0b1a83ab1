"""Channel naming and curation helpers."""

from __future__ import annotations

import re
from typing import Iterable

from cytofda.core.types import ConfigurationError

# Technical, DNA, viability, barcode and bead channels.
DEFAULT_DROP_PATTERNS: tuple[str, ...] = (
    r"^time$",
    r"^event_?length$",
    r"^(center|offset|width|residual)$",
    r"^dna",
    r"ir19[13]",
    r"cisplatin|^pt19[4-8]",
    r"^bc\d+|barcode",
    r"bead|ce140",
)


def normalize_label(label: str) -> str:
    return str(label).strip().lower()


def resolve_channels(requested: Iterable[str], available: Iterable[str]) -> list[str]:
    """Map requested names to available channels, matching case-insensitively."""
    avail = [str(c) for c in available]
    lookup: dict[str, str] = {}
    for c in avail:
        lookup.setdefault(normalize_label(c), c)
    out: list[str] = []
    missing: list[str] = []
    for name in requested:
        if str(name) in avail:
            out.append(str(name))
        elif normalize_label(name) in lookup:
            out.append(lookup[normalize_label(name)])
        else:
            missing.append(str(name))
    if missing:
        raise ConfigurationError(f"Channels not found: {', '.join(missing)}")
    return out


def curate_channels(
    channels: Iterable[str],
    keep: Iterable[str] | None = None,
    drop_patterns: Iterable[str] = DEFAULT_DROP_PATTERNS,
) -> list[str]:
    """Marker channels used for hypersphere counting.

    With `keep`, exactly those channels (in that order); otherwise every
    channel not matching a drop pattern.
    """
    chans = [str(c) for c in channels]
    if keep is not None:
        selected = resolve_channels(keep, chans)
    else:
        compiled = [re.compile(p, flags=re.IGNORECASE) for p in drop_patterns]
        selected = [c for c in chans if not any(rx.search(c) for rx in compiled)]
    if not selected:
        raise ConfigurationError("No marker channels left after curation.")
    return selected
