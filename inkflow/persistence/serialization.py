"""Row encoding shared by the SQL repositories."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Type

from pydantic import BaseModel

from .models import (
    ApprovalRequest,
    ApprovalResponse,
    ExecutionRecord,
    StepRecord,
    WorkflowRecord,
)


@dataclass(frozen=True)
class TableSpec:
    name: str
    model: Type[BaseModel]
    json_columns: FrozenSet[str] = frozenset()

    @property
    def columns(self) -> list[str]:
        return list(self.model.model_fields)


WORKFLOWS = TableSpec("workflows", WorkflowRecord, frozenset({"definition"}))
EXECUTIONS = TableSpec("executions", ExecutionRecord, frozenset({"context"}))
STEP_RECORDS = TableSpec("step_records", StepRecord, frozenset({"result"}))
APPROVAL_REQUESTS = TableSpec("approval_requests", ApprovalRequest, frozenset({"approvers"}))
APPROVAL_RESPONSES = TableSpec("approval_responses", ApprovalResponse)


def encode_value(spec: TableSpec, column: str, value: Any, native_datetimes: bool) -> Any:
    if column not in spec.model.model_fields:
        raise ValueError(f"Unknown column {column!r} for table {spec.name}")
    if value is None:
        return None
    if column in spec.json_columns:
        if isinstance(value, BaseModel):
            value = value.model_dump(mode="json", by_alias=True)
        return json.dumps(value, default=str)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value if native_datetimes else value.isoformat()
    return value


def encode_changes(
    spec: TableSpec, changes: Mapping[str, Any], native_datetimes: bool = False
) -> Dict[str, Any]:
    return {
        column: encode_value(spec, column, value, native_datetimes)
        for column, value in changes.items()
    }


def encode_record(
    spec: TableSpec, record: BaseModel, native_datetimes: bool = False
) -> Dict[str, Any]:
    return encode_changes(
        spec, {c: getattr(record, c) for c in spec.columns}, native_datetimes
    )


def decode_row(spec: TableSpec, row: Mapping[str, Any]) -> Any:
    data: Dict[str, Any] = {}
    for column in spec.columns:
        if column not in row.keys():
            continue
        value = row[column]
        if column in spec.json_columns and isinstance(value, str):
            value = json.loads(value)
        data[column] = value
    return spec.model.model_validate(data)


def decode_rows(spec: TableSpec, rows: Iterable[Mapping[str, Any]]) -> list:
    return [decode_row(spec, row) for row in rows]
