from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERT_CONSTRUCTORS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def upsert_insert(session: AsyncSession, model: type):
    """Dialect-specific INSERT supporting ON CONFLICT clauses.

    Counters and nonce claims rely on the database's native conditional
    writes, so only backends with ``ON CONFLICT`` are supported.
    """
    dialect_name = session.get_bind().dialect.name
    try:
        constructor = _INSERT_CONSTRUCTORS[dialect_name]
    except KeyError:
        raise NotImplementedError(
            f"Conditional writes are not supported on {dialect_name!r}"
        ) from None
    return constructor(model)


__all__ = ("upsert_insert",)
