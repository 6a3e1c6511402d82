from __future__ import annotations
import re
from typing import Iterable, List, Sequence, Union

from oauth_vault.core.errors import ScopeError

_SPLIT = re.compile(r"[\s,]+")


def parse_scopes(value: Union[str, Iterable[str], None]) -> List[str]:
    """Platforms return scopes space- or comma-delimited, or as a list. Order kept, duplicates dropped."""
    if value is None:
        return []
    items = _SPLIT.split(value) if isinstance(value, str) else list(value)
    seen: List[str] = []
    for item in items:
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


class ScopeValidator:
    def missing(self, requested: Sequence[str], granted: Union[str, Iterable[str], None]) -> List[str]:
        granted_set = set(parse_scopes(granted))
        return [scope for scope in parse_scopes(requested) if scope not in granted_set]

    def validate(self, requested: Sequence[str], granted: Union[str, Iterable[str], None]) -> bool:
        return not self.missing(requested, granted)

    def require(self, requested: Sequence[str], granted: Union[str, Iterable[str], None]) -> List[str]:
        """Raise ScopeError unless every requested scope was granted; returns the granted list."""
        missing = self.missing(requested, granted)
        if missing:
            raise ScopeError(missing)
        return parse_scopes(granted)
