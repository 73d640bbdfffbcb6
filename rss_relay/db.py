"""Database layer: the delivery ledger and persisted OAuth credentials."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, aliased, sessionmaker

from .identity import normalized_link, normalized_title
from .models import NewsItem

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class NewsItemModel(Base):
    """One logical news item and whether it has been claimed for sending."""

    __tablename__ = "news_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    guid = Column(String, nullable=False, unique=True)
    title = Column(Text, nullable=False)
    link = Column(Text, nullable=True)
    link_key = Column(Text, nullable=True, index=True)
    title_key = Column(Text, nullable=True, index=True)
    feed = Column(String, nullable=True)
    sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


_Duplicate = aliased(NewsItemModel)


class CredentialModel(Base):
    """Key-value storage for OAuth credential fields."""

    __tablename__ = "oauth_credentials"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)


def init_engine(connection_string: str) -> Engine:
    """Create the engine and make sure the schema exists."""
    logger.info("Initializing database connection: %s", connection_string)
    engine = create_engine(connection_string)
    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Return a session factory for the given engine."""
    return sessionmaker(bind=engine)


def _to_item(row: NewsItemModel) -> NewsItem:
    return NewsItem(
        id=row.id,
        guid=row.guid,
        title=row.title,
        link=row.link,
        feed=row.feed,
        sent=bool(row.sent),
        created_at=row.created_at,
    )


def find_existing(
    session: Session, guid: str, title: Optional[str], link: Optional[str]
) -> Optional[NewsItem]:
    """Look an item up by guid, then normalized link, then normalized title."""
    row = session.execute(
        select(NewsItemModel).where(NewsItemModel.guid == guid)
    ).scalar_one_or_none()
    if row is not None:
        return _to_item(row)

    link_key = normalized_link(link)
    if link_key:
        row = (
            session.execute(
                select(NewsItemModel)
                .where(NewsItemModel.link_key == link_key)
                .order_by(NewsItemModel.id)
            )
            .scalars()
            .first()
        )
        if row is not None:
            return _to_item(row)

    title_key = normalized_title(title)
    if title_key:
        row = (
            session.execute(
                select(NewsItemModel)
                .where(NewsItemModel.title_key == title_key)
                .order_by(NewsItemModel.id)
            )
            .scalars()
            .first()
        )
        if row is not None:
            return _to_item(row)

    return None


def insert_or_get(
    session: Session,
    guid: str,
    title: str,
    link: Optional[str],
    feed: Optional[str],
) -> NewsItem:
    """Return the stored match for an item, inserting it on first sighting."""
    existing = find_existing(session, guid, title, link)
    if existing is not None:
        return existing

    row = NewsItemModel(
        guid=guid,
        title=title,
        link=link,
        link_key=normalized_link(link),
        title_key=normalized_title(title),
        feed=feed,
        sent=False,
        created_at=datetime.now(timezone.utc),
    )
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        logger.debug("Concurrent insert for guid %s; re-reading the winner", guid)
        winner = find_existing(session, guid, title, link)
        if winner is None:
            raise
        return winner

    logger.debug("Recorded new item %s (%s)", row.id, guid)
    return _to_item(row)


def get_item(session: Session, item_id: int) -> Optional[NewsItem]:
    row = session.get(NewsItemModel, item_id)
    return _to_item(row) if row is not None else None


def claim_for_sending(session: Session, item_id: int) -> bool:
    """Atomically flip ``sent`` from false to true.

    Returns True only for the caller whose update changed the row. The claim
    also loses when another row with the same link or title key is already
    sent, so duplicates that slipped past the lookup still go out once.
    """
    keys = session.execute(
        select(NewsItemModel.link_key, NewsItemModel.title_key).where(
            NewsItemModel.id == item_id
        )
    ).one_or_none()
    if keys is None:
        return False

    stmt = (
        update(NewsItemModel)
        .where(NewsItemModel.id == item_id, NewsItemModel.sent.is_(False))
        .values(sent=True)
    )
    duplicate_of = [
        column == value
        for column, value in (
            (_Duplicate.link_key, keys.link_key),
            (_Duplicate.title_key, keys.title_key),
        )
        if value
    ]
    if duplicate_of:
        stmt = stmt.where(
            ~select(_Duplicate.id)
            .where(
                _Duplicate.id != item_id,
                _Duplicate.sent.is_(True),
                or_(*duplicate_of),
            )
            .exists()
        )
    stmt = stmt.execution_options(synchronize_session=False)
    try:
        changed = session.execute(stmt).rowcount
        session.commit()
    except Exception:
        session.rollback()
        raise
    return changed == 1


def mark_duplicates_sent(session: Session, item: NewsItem) -> int:
    """Mark rows sharing the item's link or title key as sent."""
    conditions = []
    link_key = normalized_link(item.link)
    if link_key:
        conditions.append(NewsItemModel.link_key == link_key)
    title_key = normalized_title(item.title)
    if title_key:
        conditions.append(NewsItemModel.title_key == title_key)
    if not conditions:
        return 0

    stmt = (
        update(NewsItemModel)
        .where(
            NewsItemModel.id != item.id,
            NewsItemModel.sent.is_(False),
            or_(*conditions),
        )
        .values(sent=True)
    )
    try:
        changed = session.execute(stmt).rowcount
        session.commit()
    except Exception:
        session.rollback()
        raise
    if changed:
        logger.debug("Marked %d duplicate rows of item %s as sent", changed, item.id)
    return changed


def get_credentials(session: Session, keys: Iterable[str]) -> Dict[str, str]:
    """Batch retrieve credential fields; missing keys are omitted."""
    keys = list(keys)
    if not keys:
        return {}
    stmt = select(CredentialModel).where(CredentialModel.key.in_(keys))
    rows = session.execute(stmt).scalars().all()
    return {row.key: row.value for row in rows if row.value is not None}


def set_credentials(session: Session, values: Dict[str, Optional[str]]) -> None:
    """Insert or overwrite credential fields. A value of None deletes the key."""
    if not values:
        return

    stmt = select(CredentialModel).where(CredentialModel.key.in_(list(values)))
    existing = {row.key: row for row in session.execute(stmt).scalars().all()}

    for key, value in values.items():
        if value is None:
            if key in existing:
                session.delete(existing[key])
        elif key in existing:
            existing[key].value = value
        else:
            session.add(CredentialModel(key=key, value=value))

    try:
        session.commit()
    except Exception:
        session.rollback()
        raise


def delete_credentials(session: Session, keys: Iterable[str]) -> None:
    stmt = delete(CredentialModel).where(CredentialModel.key.in_(list(keys)))
    try:
        session.execute(stmt)
        session.commit()
    except Exception:
        session.rollback()
        raise
