from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol


class AccessPolicy(Protocol):
    """Document access check owned by the surrounding platform."""

    def verify_access(self, document_ref: str, caller_id: str) -> bool:
        ...


class AllowAllAccess:
    """Grants every caller access; for single-user tooling such as the CLI."""

    def verify_access(self, document_ref: str, caller_id: str) -> bool:
        return True


class StaticAccessPolicy:
    """Access policy backed by a fixed ``document_ref -> allowed callers`` mapping."""

    def __init__(self, grants: Mapping[str, Iterable[str]]) -> None:
        self._grants = {document_ref: frozenset(callers) for document_ref, callers in grants.items()}

    def verify_access(self, document_ref: str, caller_id: str) -> bool:
        return caller_id in self._grants.get(document_ref, frozenset())
