"""
Subscription registry.

Holds the active (token, kind) subscriptions in insertion order with at most
one entry per pair. The wire is never deduplicated here - the session sends a
request for every token the operator asks for - only the stored set is.
"""

from collections.abc import Iterable, Iterator

from mdt_engine.logging import get_logger
from mdt_engine.session.models import StreamKind, SubscriptionKey

logger = get_logger(__name__)


def split_tokens(tokens: str | Iterable[str]) -> list[str]:
    """
    Split operator input into tokens.

    Accepts a comma-delimited string or an iterable of strings (each of which
    may itself be comma-delimited). Tokens are trimmed; empty ones dropped.

    Examples:
        >>> split_tokens("NSECM:2885, NSECM:1234,,")
        ['NSECM:2885', 'NSECM:1234']
    """
    chunks = [tokens] if isinstance(tokens, str) else list(tokens)
    result: list[str] = []
    for chunk in chunks:
        for part in chunk.split(","):
            token = part.strip()
            if token:
                result.append(token)
    return result


class SubscriptionRegistry:
    """
    Ordered set of active subscriptions.

    Used by the session to persist subscription intent and to replay it
    after each login confirmation.
    """

    def __init__(self, entries: Iterable[SubscriptionKey] | None = None) -> None:
        self._entries: dict[SubscriptionKey, None] = {}
        if entries is not None:
            self.add(entries)

    def add(self, keys: Iterable[SubscriptionKey]) -> list[SubscriptionKey]:
        """
        Merge keys into the registry.

        Args:
            keys: Keys to add (duplicates are ignored)

        Returns:
            Keys that were not already registered, in order
        """
        added: list[SubscriptionKey] = []
        for key in keys:
            if key in self._entries:
                continue
            self._entries[key] = None
            added.append(key)
        return added

    def remove(self, token: str, kind: StreamKind) -> bool:
        """
        Remove one subscription.

        Returns:
            True if an entry was removed
        """
        for key in self._entries:
            if key.token == token and key.kind == kind:
                del self._entries[key]
                return True
        return False

    def replace(self, keys: Iterable[SubscriptionKey]) -> None:
        """Replace the whole set (used when restoring persisted state)."""
        self._entries.clear()
        self.add(keys)
        logger.debug("Registry restored with %d subscriptions", len(self._entries))

    def clear(self) -> None:
        """Remove every subscription."""
        self._entries.clear()

    def entries(self) -> list[SubscriptionKey]:
        """Snapshot of the registered subscriptions, in insertion order."""
        return list(self._entries)

    def by_kind(self, kind: StreamKind) -> list[SubscriptionKey]:
        """Subscriptions of one kind."""
        return [key for key in self._entries if key.kind == kind]

    def tokens(self, kind: StreamKind | None = None) -> list[str]:
        """Tokens, optionally restricted to one kind, without duplicates."""
        seen: dict[str, None] = {}
        for key in self._entries:
            if kind is None or key.kind == kind:
                seen.setdefault(key.token, None)
        return list(seen)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[SubscriptionKey]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
