import time, json, hashlib, hmac, os
from typing import Optional
from fastapi import HTTPException
from fastapi import Request
from prometheus_client import Counter

# Metrics
AUDIT = Counter("audited_total", "audit log writes")


def require_api_key(request: Request) -> None:
    """Validate API key from Authorization or X-API-Key headers.
    - Accepts: Authorization: Bearer <KEY> or X-API-Key: <KEY>
    - Env: API_KEY must be set (single key)
    """
    expected = os.getenv("API_KEY")
    if not expected:
        # If not configured, treat as disabled
        return
    auth = request.headers.get("authorization")
    got = None
    if auth and isinstance(auth, str):
        parts = auth.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            got = parts[1]
    if not got:
        got = request.headers.get("x-api-key")
    if not got or not hmac.compare_digest(got, expected):
        raise HTTPException(status_code=401, detail="missing or invalid API key")


def text_digest(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


def log_review(text: str, client: Optional[dict], server: dict, *, backend_error: bool = False,
               secret: Optional[str] = None, path: Optional[str] = None,
               request_id: Optional[str] = None) -> dict:
    """Append one client-vs-server audit record. Stores a hash of the text, never the text."""
    secret = secret or os.getenv("AUDIT_HMAC", "change_me_in_prod")
    path = path or os.getenv("AUDIT_LOG", "logs/audit.jsonl")
    blob = {
        "ts": time.time(),
        "text_sha": text_digest(text),
        "text_len": len(text),
        "client": {k: (client or {}).get(k) for k in ("label", "action", "source", "scores")},
        "server": {k: server.get(k) for k in ("label", "action", "source", "scores", "reason")},
        "backend_error": backend_error,
    }
    if request_id:
        blob["request_id"] = request_id
    mac = hmac.new(secret.encode(), json.dumps(blob, sort_keys=True).encode(), "sha256").hexdigest()
    blob["hmac"] = mac
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.write(json.dumps(blob) + "\n")
    AUDIT.inc()
    return blob


def verify_record(blob: dict, secret: Optional[str] = None) -> bool:
    secret = secret or os.getenv("AUDIT_HMAC", "change_me_in_prod")
    body = {k: v for k, v in blob.items() if k != "hmac"}
    calc = hmac.new(secret.encode(), json.dumps(body, sort_keys=True).encode(), "sha256").hexdigest()
    return hmac.compare_digest(calc, blob.get("hmac", ""))
