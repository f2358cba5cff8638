# sharkspotter/records.py
"""
Record types flowing through a scan.

A Moray bucket entry for a Manta object looks like this (abridged); the
``_value`` column holds the Manta object metadata as a JSON string:

    {
      "_id": 114590,
      "_etag": "7712D647",
      "_key": "/6136.../stor/logs/2019/10/09/08/07e023da.log",
      "_value": "{\"objectId\": \"2e08b069-...\", \"owner\": \"6136...\",
                  \"sharks\": [{\"datacenter\": \"ruidc0\",
                                \"manta_storage_id\": \"3.stor.east.joyent.us\"}],
                  ...}"
    }

Only ``sharks`` and ``objectId`` are required of the metadata; everything
else is carried through untouched.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import pydantic
from pydantic import BaseModel, ConfigDict

from .errors import DataError


class SharkCopy(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    manta_storage_id: str
    datacenter: Optional[str] = None


class MantaValue(BaseModel):
    model_config = ConfigDict(extra="allow")

    objectId: str
    sharks: List[SharkCopy]
    owner: Optional[str] = None
    key: Optional[str] = None


@dataclass(frozen=True)
class ShardDescriptor:
    shard: int
    rpc_host: str
    rpc_port: int
    db_host: str
    begin: int = 0
    end: Optional[int] = None

    def window(self) -> str:
        end = "end" if self.end is None else str(self.end)
        return f"[{self.begin}, {end})"


@dataclass
class Cursor:
    shard: int
    next_index: int

    def advance(self, last_index: int) -> None:
        if last_index < self.next_index:
            raise ValueError(
                f"cursor for shard {self.shard} cannot move back from {self.next_index} to {last_index + 1}"
            )
        self.next_index = last_index + 1


@dataclass(frozen=True)
class ObjectRecord:
    index: int
    object_id: str
    key: str
    etag: str
    owner: Optional[str]
    sharks: Tuple[SharkCopy, ...]
    value: Dict[str, Any] = field(repr=False, compare=False)
    row: Dict[str, Any] = field(repr=False, compare=False)

    @property
    def shark_ids(self) -> Tuple[str, ...]:
        return tuple(s.manta_storage_id for s in self.sharks)


def row_index(row: Dict[str, Any], id_name: str) -> int:
    """Return the shard-local index of a raw row; rows without one cannot be paged."""
    raw = row.get(id_name)
    if raw is None:
        raise DataError(f"Row is missing index column {id_name!r}")
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise DataError(f"Row index {raw!r} is not an integer") from e


def manta_value_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Pull the Manta metadata out of a Moray row without assuming its schema."""
    raw = row.get("_value")
    if raw is None:
        raise DataError(f"Missing '_value' in Moray entry (key={row.get('_key')!r})")
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, (str, bytes)):
        raise DataError(f"Could not read '_value' of type {type(raw).__name__}")
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise DataError(f"Could not parse '_value' as JSON: {e}") from e
    if not isinstance(value, dict):
        raise DataError("'_value' is not a JSON object")
    return value


def decode_row(row: Dict[str, Any], id_name: str = "_id") -> ObjectRecord:
    index = row_index(row, id_name)
    value = manta_value_from_row(row)
    if "sharks" not in value:
        raise DataError(f"Missing 'sharks' field at index {index}")
    if not isinstance(value["sharks"], list):
        raise DataError(f"Sharks are not in an array at index {index}")
    try:
        meta = MantaValue.model_validate(value)
    except pydantic.ValidationError as e:
        raise DataError(f"Could not decode metadata at index {index}: {e.errors()[0].get('msg')}") from e

    etag = row.get("_etag")
    return ObjectRecord(
        index=index,
        object_id=meta.objectId,
        key=str(row.get("_key") or meta.key or ""),
        etag="" if etag is None else str(etag).replace('"', ""),
        owner=meta.owner,
        sharks=tuple(meta.sharks),
        value=value,
        row=row,
    )


__all__ = [
    "Cursor",
    "MantaValue",
    "ObjectRecord",
    "ShardDescriptor",
    "SharkCopy",
    "decode_row",
    "manta_value_from_row",
    "row_index",
]
