from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

ACTOR_ID_HEADER = 'x-actor-id'
ACTOR_EMAIL_HEADER = 'x-actor-email'


@dataclass(frozen=True)
class Actor:
    id: str
    email: str | None = None


def get_optional_actor(request: Request) -> Actor | None:
    # Identity is asserted by the upstream auth layer; this service only reads it.
    actor_id = (request.headers.get(ACTOR_ID_HEADER) or '').strip()
    if not actor_id:
        return None
    email = (request.headers.get(ACTOR_EMAIL_HEADER) or '').strip() or None
    return Actor(id=actor_id, email=email)


def get_current_actor(actor: Actor | None = Depends(get_optional_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Missing X-Actor-Id header')
    return actor
