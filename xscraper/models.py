"""
Record shape shared by the extractors, the engine and the stores.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

FIELDS = (
    'id',
    'author_handle',
    'author_display_name',
    'body',
    'created_at',
    'permalink',
    'media',
    'engagement',
    'sentiment',
)


@dataclass
class Record:
    """One collected post. `id` is the identity key; an empty id means the read was unusable."""
    id: str = ""
    author_handle: str = ""
    author_display_name: str = ""
    body: str = ""
    created_at: str = ""            # ISO-8601 or empty
    permalink: str = ""
    media: List[str] = field(default_factory=list)
    engagement: Optional[Dict[str, str]] = None
    sentiment: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)  # unknown keys from a persisted document

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in FIELDS}
        data['media'] = list(self.media)
        data.update(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Record':
        if not isinstance(data, dict):
            raise ValueError(f"Expected an object, got {type(data).__name__}")
        known = {name: data[name] for name in FIELDS if name in data}
        if 'id' in known:
            known['id'] = str(known['id'] or "")
        known['media'] = list(known.get('media') or [])
        extra = {key: value for key, value in data.items() if key not in FIELDS}
        return cls(extra=extra, **known)
