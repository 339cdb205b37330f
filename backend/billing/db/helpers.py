"""Database helper functions for subscription rows"""
import logging
from typing import Any, Dict

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from billing.models.subscription import Subscription

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def upsert_subscription_for_user(values: Dict[str, Any], db: Session) -> None:
    """Insert or overwrite the single subscription row for values["user_id"]

    Runs as one INSERT ... ON CONFLICT (user_id) DO UPDATE statement so two
    concurrent writers for the same user can never produce two rows. Every
    column in values except user_id and created_at is overwritten on conflict.
    Does not commit.
    """
    dialect = db.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Subscription upsert is not supported on dialect '{dialect}'")

    stmt = insert(Subscription.__table__).values(**values)
    update_columns = {
        key: stmt.excluded[key]
        for key in values
        if key not in ("user_id", "created_at")
    }
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.__table__.c.user_id],
        set_=update_columns
    )
    db.execute(stmt)
    # Rows already loaded in this session must not shadow the new values
    db.expire_all()
