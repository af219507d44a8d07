from fastapi import Depends, HTTPException, Request

from escrowguard.notifications import NotificationSink
from escrowguard.security import Actor, current_actor


def get_sink(request: Request) -> NotificationSink:
    return request.app.state.notification_sink


def rate_limited(request: Request, actor: Actor = Depends(current_actor)) -> Actor:
    """Per-actor budget on money-moving POSTs."""
    if not request.app.state.rate_limiter.hit(f"{actor.id}:{request.url.path}"):
        raise HTTPException(status_code=429, detail="Too many requests; slow down")
    return actor
