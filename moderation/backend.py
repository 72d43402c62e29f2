"""
HTTP clients for the remote tier.

BackendClient talks to our own decision endpoint (POST /moderation/check).
UpstreamClient is what that endpoint uses to reach the model service.
"""
import logging
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from .config import ModelConfig
from .decision import Decision
from .errors import RemoteError

log = logging.getLogger(__name__)


def _error_detail(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)[:200]


class BackendClient:
    def __init__(self, check_url: str, timeout: float = 10.0, api_key: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.check_url = check_url
        self.timeout = timeout
        self.api_key = api_key
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def check(self, text: str, client_decision: Optional[Decision] = None) -> Decision:
        payload: Dict[str, Any] = {"text": text}
        if client_decision is not None:
            payload["clientDecision"] = client_decision.to_wire()
        try:
            resp = self.session.post(self.check_url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteError(f"backend unreachable: {e}") from e
        if not resp.ok:
            raise RemoteError(f"HTTP {resp.status_code}: {_error_detail(resp)}", status_code=resp.status_code)
        try:
            return Decision.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise RemoteError(f"malformed backend decision: {e}", status_code=resp.status_code) from e


def parse_upstream_scores(data: Any, config: ModelConfig) -> Dict[str, float]:
    """Accepts [[{label, score}]], [{label, score}] or {label, score}.
    Unknown labels are ignored; non-numeric scores count as 0.
    """
    level1 = data if isinstance(data, list) else [data]
    flat = level1[0] if level1 and isinstance(level1[0], list) else level1
    scores: Dict[str, float] = {}
    for item in flat:
        if not isinstance(item, dict):
            raise RemoteError(f"unexpected upstream item: {item!r}")
        label = item.get("label")
        if label not in config.labels:
            continue
        score = item.get("score")
        scores[label] = float(score) if isinstance(score, (int, float)) and not isinstance(score, bool) else 0.0
    return scores


class UpstreamClient:
    def __init__(self, url: str, config: ModelConfig, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.config = config
        self.timeout = timeout
        self.session = session or requests.Session()

    def scores(self, text: str) -> Dict[str, float]:
        try:
            resp = self.session.post(self.url, json={"inputs": {"inputs": [text]}}, timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteError(f"upstream unreachable: {e}") from e
        if not resp.ok:
            raise RemoteError(f"upstream HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise RemoteError(f"upstream returned non-JSON: {e}") from e
        return parse_upstream_scores(data, self.config)
