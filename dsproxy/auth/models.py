from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, built fresh for every request."""

    subject: str  # primary authorization key (`sub`)
    email: Optional[str] = None  # display only, never used for authorization
    groups: Tuple[str, ...] = field(default_factory=tuple)

    def principals(self) -> List[str]:
        """Subject first, then groups (deduplicated, order kept)."""
        out: List[str] = []
        for p in (self.subject, *self.groups):
            if p and p not in out:
                out.append(p)
        return out


def normalize_groups(raw: Any) -> Tuple[str, ...]:
    """
    Decode a `groups` claim.

    Accepts a list of strings or a heterogeneous list; non-string entries are
    dropped. Anything that is not a list/tuple yields no groups.
    """
    if not isinstance(raw, (list, tuple)):
        return ()
    return tuple(g for g in raw if isinstance(g, str) and g)
