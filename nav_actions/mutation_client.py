from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import requests
from requests import Session

from nav_actions.core.pipeline import MutationRequest, MutationResult

logger = logging.getLogger(__name__)


class HttpMutationService:
    """Entity mutation service reached over HTTP.

    POSTs one MutationRequest to ``{base_url}/mutations`` and expects
    ``{"success": bool, "code": str, "message": str}`` back. 4xx answers are
    returned as failed results; 5xx answers and transport errors raise
    (the pipeline turns them into failures with a stable code).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8080/v1",
        timeout: int = 30,
        session: Optional[Session] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)

    def mutate(self, request: MutationRequest) -> MutationResult:
        url = f"{self.base_url}/mutations"
        r = self.session.post(url, json=request.model_dump(mode="json"), timeout=self.timeout)
        if r.status_code >= 500:
            r.raise_for_status()
        data = self._body(r)
        if r.ok and data.get("success", True):
            return MutationResult.ok()
        code = data.get("code") or f"http_{r.status_code}"
        message = data.get("message") or data.get("error") or r.reason or "Mutation rejected"
        logger.info("Mutation of %s/%s rejected: %s", request.entity_type.value, request.entity_id, code)
        return MutationResult.failure(str(code), str(message))

    @staticmethod
    def _body(r: requests.Response) -> Dict[str, Any]:
        if not r.content:
            return {}
        try:
            data = r.json()
        except ValueError:
            return {"message": r.text[:500]}
        return data if isinstance(data, dict) else {}
