# escrowguard/services/idempotency.py
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.orm import Session

from escrowguard.config import settings
from escrowguard.errors import EscrowError
from escrowguard.metrics import idempotency_conflicts, idempotency_hits, inflight_retries, money_errors
from escrowguard.models import IdempotencyKey, as_utc, now_utc


def run_idempotent(
    db: Session,
    idem_key: str,
    fingerprint: str,
    endpoint: str,
    action: Callable[[], Tuple[int, Dict]],
    *,
    now: Optional[datetime] = None,
) -> Tuple[int, Dict]:
    """
    Replay-safe wrapper around a money-moving action:
      - Bind Idempotency-Key to THIS request via fingerprint (method + path + body identity)
      - If a response is cached for the key -> return it
      - If the key is in flight -> 425 Too Early
      - Else take a short in-flight lock, run the action (which owns its own
        transaction), cache its response and clear the lock
    A failed action releases the lock so the client can retry with the same key.
    Returns: (status_code, response_json)
    """
    now = now or now_utc()
    row = db.get(IdempotencyKey, idem_key)

    # Key used for a different request? -> 409
    if row and row.request_fingerprint and row.request_fingerprint != fingerprint:
        idempotency_conflicts.labels(endpoint).inc()
        raise HTTPException(status_code=409, detail="Idempotency-Key was used for a different request")

    # Completed response cached?
    if row and row.response_body is not None:
        idempotency_hits.labels(endpoint).inc()
        return (row.status_code or 200, row.response_body)

    # In-flight?
    if row and row.locked_until and as_utc(row.locked_until) > now:
        inflight_retries.labels(endpoint).inc()
        raise HTTPException(status_code=425, detail="Request in flight; retry shortly")

    # Set short in-flight lock + fingerprint
    lock_until = now + timedelta(seconds=settings.idempotency_lock_seconds)
    if not row:
        row = IdempotencyKey(key=idem_key, request_fingerprint=fingerprint, locked_until=lock_until)
        db.add(row)
    else:
        row.request_fingerprint = fingerprint
        row.locked_until = lock_until
    db.commit()

    try:
        status_code, body = action()
    except EscrowError as exc:
        money_errors.labels(endpoint, exc.code).inc()
        row.locked_until = None
        db.commit()
        raise

    # Cache response and clear lock
    row.status_code = status_code
    row.response_body = body
    row.locked_until = None
    db.commit()
    return (status_code, body)
