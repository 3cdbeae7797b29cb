"""
Conversation transcript shown by the presentation layer.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .variables import interpolate


class Sender(Enum):
    """Who produced a transcript entry."""
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


@dataclass(frozen=True)
class TranscriptEntry:
    """Single message in the transcript."""
    content: str
    sender: Sender
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    has_audio: bool = False
    voice_label: Optional[str] = None
    options: Tuple[str, ...] = ()
    transient: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "content": self.content,
            "sender": self.sender.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.has_audio:
            data["has_audio"] = True
        if self.voice_label:
            data["voice_label"] = self.voice_label
        if self.options:
            data["options"] = list(self.options)
        return data


class Transcript:
    """Time-ordered sequence of messages."""

    def __init__(self):
        self._entries: List[TranscriptEntry] = []

    def append(
        self,
        content: str,
        sender: Sender,
        variables: Optional[Mapping[str, Any]] = None,
        **kwargs: Any
    ) -> TranscriptEntry:
        """Append a message; agent and system content is interpolated now."""
        if sender in (Sender.AGENT, Sender.SYSTEM) and variables is not None:
            content = interpolate(content, variables)
        entry = TranscriptEntry(content=content or "", sender=sender, **kwargs)
        self._entries.append(entry)
        return entry

    def remove_transient(self) -> int:
        """Drop transient entries such as the processing indicator."""
        before = len(self._entries)
        self._entries = [entry for entry in self._entries if not entry.transient]
        return before - len(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    @property
    def entries(self) -> Tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    @property
    def last(self) -> Optional[TranscriptEntry]:
        return self._entries[-1] if self._entries else None

    def by_sender(self, sender: Sender) -> List[TranscriptEntry]:
        return [entry for entry in self._entries if entry.sender == sender]

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> TranscriptEntry:
        return self._entries[index]
