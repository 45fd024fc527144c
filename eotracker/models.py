# eotracker/models.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class DocumentType(str, Enum):
    EXECUTIVE_ORDER = "EXECUTIVE_ORDER"
    PRESIDENTIAL_MEMORANDUM = "PRESIDENTIAL_MEMORANDUM"
    PROCLAMATION = "PROCLAMATION"


@dataclass
class RawDocument:
    """One listing entry as the source presents it (title may carry markup)."""
    title: str
    date: str
    url: str
    content: str = ""
    excerpt: str = ""
    order_number: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CanonicalDocument:
    identifier: str
    type: DocumentType
    title: str
    date: date
    url: str
    number: Optional[str] = None
    summary: str = ""
    content: str = ""
    categories: List[str] = field(default_factory=list)
    agencies: List[str] = field(default_factory=list)
    is_new: bool = True

    def dedup_keys(self) -> Tuple[str, str]:
        return self.identifier, self.url

    def to_item(self) -> Dict[str, Any]:
        """Flat, JSON-safe dict (key-value store item / API payload)."""
        d = asdict(self)
        d["type"] = self.type.value
        d["date"] = self.date.isoformat()
        d.pop("is_new", None)
        return d

    def log_entry(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title or "Untitled",
            "number": self.identifier or "N/A",
            "date": self.date.isoformat(),
        }
