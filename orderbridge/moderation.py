# orderbridge/moderation.py
import re
from typing import Iterable

# characters people put between letters to dodge the filter
_FILLER_RE = re.compile(r"[\s.\-_]")

MUTE_SECONDS = 24 * 60 * 60


def normalize(text: str) -> str:
    return _FILLER_RE.sub("", (text or "").lower())


class ProfanityFilter:
    """
    Substring match of blocked words against the normalized message.
    The word list is handed in; where it is kept is someone else's concern.
    """

    def __init__(self, words: Iterable[str] = ()) -> None:
        self.words = frozenset(normalize(w) for w in words if normalize(w))

    def __len__(self) -> int:
        return len(self.words)

    def matches(self, text: str) -> bool:
        if not self.words:
            return False
        flat = normalize(text)
        return any(word in flat for word in self.words)
