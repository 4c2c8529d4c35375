"""Per-execution variable store."""

from __future__ import annotations

import copy
from typing import Any, Dict, Optional


class ExecutionContext:
    """Variables and metadata scoped to one execution.

    Variables are read and written by steps and by the expression evaluator.
    Metadata is an engine side-channel (suspension state, parallel
    bookkeeping) kept apart from user variables.
    """

    def __init__(
        self,
        workflow_id: str,
        document_id: str,
        user_id: str,
        variables: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.workflow_id = workflow_id
        self.document_id = document_id
        self.user_id = user_id
        self._variables: Dict[str, Any] = copy.deepcopy(variables or {})
        self._metadata: Dict[str, Any] = copy.deepcopy(metadata or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._variables.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._variables[key] = value

    def has(self, key: str) -> bool:
        return key in self._variables

    def delete(self, key: str) -> None:
        self._variables.pop(key, None)

    def set_many(self, variables: Dict[str, Any]) -> None:
        self._variables.update(variables)

    def get_all(self) -> Dict[str, Any]:
        return dict(self._variables)

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self._metadata.get(key, default)

    def set_metadata(self, key: str, value: Any) -> None:
        self._metadata[key] = value

    def delete_metadata(self, key: str) -> None:
        self._metadata.pop(key, None)

    def resolve(self, path: str) -> Any:
        """Look up a dotted path such as ``signer.address.city``.

        Any missing segment yields ``None``. Numeric segments index into lists.
        """
        value: Any = self._variables
        for part in path.split("."):
            if isinstance(value, dict):
                if part not in value:
                    return None
                value = value[part]
            elif isinstance(value, (list, tuple)) and part.lstrip("-").isdigit():
                index = int(part)
                if not -len(value) <= index < len(value):
                    return None
                value = value[index]
            else:
                return None
        return value

    def to_snapshot(self) -> Dict[str, Any]:
        """Return a JSON-able deep copy suitable for persistence."""
        return {
            "workflow_id": self.workflow_id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "variables": copy.deepcopy(self._variables),
            "metadata": copy.deepcopy(self._metadata),
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls(
            workflow_id=data.get("workflow_id", ""),
            document_id=data.get("document_id", ""),
            user_id=data.get("user_id", ""),
            variables=data.get("variables") or {},
            metadata=data.get("metadata") or {},
        )

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(workflow_id={self.workflow_id!r}, "
            f"document_id={self.document_id!r}, variables={self._variables!r})"
        )
