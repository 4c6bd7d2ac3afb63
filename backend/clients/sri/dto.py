from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union


@dataclass(frozen=True)
class AuthorityMessage:
    identifier: str
    message: str
    additional_info: str = ""
    type: str = ""

    def render(self) -> str:
        text = f"[{self.identifier}] {self.message}" if self.identifier else self.message
        if self.additional_info:
            text = f"{text}: {self.additional_info}"
        return text


# Reception outcomes


@dataclass(frozen=True)
class Received:
    messages: List[AuthorityMessage] = field(default_factory=list)


@dataclass(frozen=True)
class Returned:
    messages: List[AuthorityMessage] = field(default_factory=list)


@dataclass(frozen=True)
class Unknown:
    """Reception answered with a state this client does not know."""

    state: str = ""
    messages: List[AuthorityMessage] = field(default_factory=list)


SubmitResult = Union[Received, Returned, Unknown]


# Authorization query outcomes


@dataclass(frozen=True)
class Authorized:
    number: str
    timestamp: Optional[datetime]
    authorized_xml: Optional[str] = None
    messages: List[AuthorityMessage] = field(default_factory=list)


@dataclass(frozen=True)
class NotAuthorized:
    messages: List[AuthorityMessage] = field(default_factory=list)


@dataclass(frozen=True)
class Processing:
    messages: List[AuthorityMessage] = field(default_factory=list)


@dataclass(frozen=True)
class NotFound:
    messages: List[AuthorityMessage] = field(default_factory=list)


QueryResult = Union[Authorized, NotAuthorized, Processing, NotFound]
