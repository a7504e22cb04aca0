from __future__ import annotations


def actor_for(user, *, fallback: str = "system") -> dict:
    if user is None:
        return {"type": fallback, "id": None}
    role = (getattr(user, "role", None) or "buyer").strip().lower()
    return {"type": role, "id": int(user.id)}


def parse_actor(actor) -> tuple[str, int | None]:
    if isinstance(actor, dict):
        actor_type = str(actor.get("type") or "system")[:32]
        actor_id_raw = actor.get("id")
        try:
            actor_id = int(actor_id_raw) if actor_id_raw is not None else None
        except (TypeError, ValueError):
            actor_id = None
        return actor_type, actor_id
    return "system", None
