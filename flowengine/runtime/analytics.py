"""
Analytics collection hooks.

The executor calls an optional AnalyticsCollector after each successful node
and once per terminal run. ``DataPointCollector`` is a ready-made collector
that extracts configured values (``$.score``, ``items[0].name``) from node
outputs and execution metadata and keeps them as typed data points.
"""

import logging
import re
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


@runtime_checkable
class AnalyticsCollector(Protocol):
    async def collect_node_output(self, node_id: str, node_name: str, output: dict[str, Any]) -> None: ...

    async def collect_execution_meta(self, duration_ms: int, total_tokens: int, status: str) -> None: ...


class DataPointSource(StrEnum):
    NODE_OUTPUT = "NODE_OUTPUT"
    EXECUTION_META = "EXECUTION_META"


class DataPointType(StrEnum):
    NUMBER = "NUMBER"
    PERCENTAGE = "PERCENTAGE"
    RATING = "RATING"
    STRING = "STRING"
    BOOLEAN = "BOOLEAN"
    ARRAY = "ARRAY"
    OBJECT = "OBJECT"


class DataPointConfig(BaseModel):
    """Which value to extract, from where, and as what type."""

    id: str
    name: str
    source: DataPointSource = DataPointSource.NODE_OUTPUT
    source_path: str
    value_type: DataPointType = DataPointType.STRING
    node_id: str | None = None
    node_name: str | None = None
    is_required: bool = False


class DataPoint(BaseModel):
    config_id: str
    execution_id: str
    node_id: str | None = None
    node_name: str | None = None
    value: Any = None
    recorded_at: datetime = Field(default_factory=datetime.now)


_INDEX = re.compile(r"\[(\d+)\]")


def extract_value(data: Any, path: str) -> Any:
    """Follow a dotted path (``$.`` prefix optional, ``[n]`` list indexes) into ``data``."""
    if path.startswith("$."):
        path = path[2:]
    current = data
    for part in _INDEX.sub(r".\1", path).split("."):
        if not part:
            continue
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def convert_value(value: Any, value_type: DataPointType) -> Any:
    if value is None:
        return None
    if value_type in (DataPointType.NUMBER, DataPointType.PERCENTAGE, DataPointType.RATING):
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
    if value_type == DataPointType.STRING:
        return str(value)
    if value_type == DataPointType.BOOLEAN:
        return bool(value)
    return value


class DataPointCollector:
    """In-memory AnalyticsCollector driven by a list of DataPointConfig."""

    def __init__(self, execution_id: str, configs: list[DataPointConfig]):
        self.execution_id = execution_id
        self.configs = configs
        self.data_points: list[DataPoint] = []

    async def collect_node_output(self, node_id: str, node_name: str, output: dict[str, Any]) -> None:
        for config in self.configs:
            if config.source != DataPointSource.NODE_OUTPUT:
                continue
            if config.node_id and config.node_id != node_id:
                continue
            if config.node_name and config.node_name != node_name:
                continue
            value = extract_value(output, config.source_path)
            if value is None and config.is_required:
                logger.warning(f"Required analytics data point '{config.name}' missing from node '{node_name}'")
                continue
            self.data_points.append(
                DataPoint(
                    config_id=config.id,
                    execution_id=self.execution_id,
                    node_id=node_id,
                    node_name=node_name,
                    value=convert_value(value, config.value_type),
                )
            )

    async def collect_execution_meta(self, duration_ms: int, total_tokens: int, status: str) -> None:
        metadata = {
            "duration": duration_ms,
            "total_tokens": total_tokens,
            "status": status,
            "success_rate": 100 if status == "COMPLETED" else 0,
        }
        for config in self.configs:
            if config.source != DataPointSource.EXECUTION_META:
                continue
            self.data_points.append(
                DataPoint(
                    config_id=config.id,
                    execution_id=self.execution_id,
                    value=convert_value(extract_value(metadata, config.source_path), config.value_type),
                )
            )
