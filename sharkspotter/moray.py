"""Thin client for the metadata service's JSON gateway.

Only the two endpoints sharkspotter needs are wrapped: ``sql`` (arbitrary
read-only query with positional ``$n`` arguments) and ``findobjects``
(bucket lookup with an LDAP-style filter). Both answer with a JSON array.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

import requests


class MorayClient:
    def __init__(
        self,
        host: str,
        port: int,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = f"http://{host}:{port}"
        self.timeout = timeout
        self._session = session or requests.Session()

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = self._session.post(f"{self.base_url}/{endpoint}", json=payload, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, list):
            raise ValueError(f"Expected a JSON array from {endpoint}, got {type(data).__name__}")
        return data

    def sql(
        self,
        query: str,
        args: Sequence[Any] = (),
        options: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        payload = {"query": query, "args": list(args), "options": options or {"timeout": int(self.timeout * 1000)}}
        return self._post("sql", payload)

    def find_objects(self, bucket: str, filter_: str, options: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        return self._post("findobjects", {"bucket": bucket, "filter": filter_, "options": options or {}})

    def close(self) -> None:
        self._session.close()


__all__ = ["MorayClient"]
