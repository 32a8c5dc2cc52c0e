# panelrunner/store.py
"""
Persistence for game credentials, saved panel sessions and the action audit log.

Expired sessions are detected lazily: ``check_session`` flips ``is_active``
when it reads a row whose ``expires_at`` has passed. Nothing sweeps in the
background.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from .config import CONFIG
from .errors import CredentialNotFoundError
from .models import SessionCheck

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Game(Base):
    __tablename__ = "game"

    id = Column(Integer, primary_key=True)
    name = Column(String(128), nullable=False, unique=True)
    login_url = Column(Text)
    dashboard_url = Column(Text)


class GameCredential(Base):
    __tablename__ = "game_credential"

    id = Column(Integer, primary_key=True)
    team_id = Column(Integer, nullable=False, index=True)
    game_id = Column(Integer, ForeignKey("game.id"), nullable=False)
    username = Column(String(256), nullable=False, default="")
    password = Column(String(256), nullable=False, default="")
    created_at = Column(DateTime, default=_utcnow)

    game = relationship(Game, lazy="joined")
    sessions = relationship(
        "Session",
        back_populates="game_credential",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Session(Base):
    __tablename__ = "session"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    game_credential_id = Column(
        Integer, ForeignKey("game_credential.id", ondelete="CASCADE"), nullable=False, index=True
    )
    session_token = Column(String(128), nullable=False)
    session_data = Column(JSON)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime)
    created_at = Column(DateTime, default=_utcnow)

    game_credential = relationship(GameCredential, back_populates="sessions")


class GameActionStatus(Base):
    """Append-only audit row, one per action execution."""

    __tablename__ = "game_action_status"

    id = Column(Integer, primary_key=True)
    team_id = Column(Integer, nullable=False, index=True)
    game_id = Column(Integer, nullable=False)
    user_id = Column(String(64))
    action = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)
    inputs = Column(JSON)
    execution_time_secs = Column(Float)
    message = Column(Text)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)


def _new_token() -> str:
    return secrets.token_hex(32)


class SessionStore:
    def __init__(self, database_url: str = None, engine=None):
        if engine is None:
            url = database_url or CONFIG.database_url
            # the worker reaches the store from threads via asyncio.to_thread
            connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
            engine = create_engine(url, future=True, connect_args=connect_args)
        self.engine = engine
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def create_all(self):
        Base.metadata.create_all(self.engine)

    # -- games & credentials ------------------------------------------------

    def save_game(self, name: str, login_url: str = None, dashboard_url: str = None) -> Game:
        with self._session_factory() as db:
            game = db.execute(select(Game).where(Game.name == name)).scalar_one_or_none()
            if game is None:
                game = Game(name=name)
                db.add(game)
            if login_url is not None:
                game.login_url = login_url
            if dashboard_url is not None:
                game.dashboard_url = dashboard_url
            db.commit()
            return game

    def save_credential(self, team_id: int, game_id: int, username: str, password: str) -> GameCredential:
        with self._session_factory() as db:
            credential = db.execute(
                select(GameCredential)
                .where(GameCredential.team_id == team_id, GameCredential.game_id == game_id)
            ).unique().scalar_one_or_none()
            if credential is None:
                credential = GameCredential(team_id=team_id, game_id=game_id)
                db.add(credential)
            credential.username = username
            credential.password = password
            db.commit()
            db.refresh(credential)
            return credential

    def get_credential(self, game_credential_id: int) -> GameCredential:
        with self._session_factory() as db:
            credential = db.get(GameCredential, game_credential_id)
            if credential is None:
                raise CredentialNotFoundError(game_credential_id)
            return credential

    def find_credential(self, team_id: int, game_id: int) -> Optional[GameCredential]:
        with self._session_factory() as db:
            return db.execute(
                select(GameCredential)
                .where(GameCredential.team_id == team_id, GameCredential.game_id == game_id)
            ).unique().scalar_one_or_none()

    def delete_credential(self, game_credential_id: int) -> bool:
        with self._session_factory() as db:
            credential = db.get(GameCredential, game_credential_id)
            if credential is None:
                return False
            db.delete(credential)
            db.commit()
            return True

    # -- sessions -----------------------------------------------------------

    def _latest_session_query(self, game_credential_id: int, user_id: Optional[str], active_only: bool):
        query = select(Session).where(Session.game_credential_id == game_credential_id)
        if user_id is not None:
            query = query.where(Session.user_id == user_id)
        if active_only:
            query = query.where(Session.is_active.is_(True))
        return query.order_by(Session.created_at.desc(), Session.id.desc()).limit(1)

    def get_latest_session(self, game_credential_id: int, user_id: str = None, active_only: bool = False):
        with self._session_factory() as db:
            return db.execute(
                self._latest_session_query(game_credential_id, user_id, active_only)
            ).scalar_one_or_none()

    def get_or_create_session(
        self,
        user_id: str,
        game_credential_id: int,
        session_data: Dict[str, Any] = None,
        ttl: timedelta = None,
    ) -> Session:
        """Refresh the user's session row for the credential, inserting it if missing."""
        ttl = ttl or timedelta(hours=CONFIG.session_ttl_hours)
        now = _utcnow()
        with self._session_factory() as db:
            rows = db.execute(
                select(Session)
                .where(Session.user_id == user_id, Session.game_credential_id == game_credential_id)
                .order_by(Session.created_at.desc(), Session.id.desc())
            ).scalars().all()

            if rows:
                row = rows[0]
                for stale in rows[1:]:
                    stale.is_active = False
                logger.info("Refreshing session %s for credential %s", row.id, game_credential_id)
            else:
                if db.get(GameCredential, game_credential_id) is None:
                    raise CredentialNotFoundError(game_credential_id)
                row = Session(user_id=user_id, game_credential_id=game_credential_id, created_at=now)
                db.add(row)
                logger.info("Creating session for credential %s", game_credential_id)

            row.session_token = _new_token()
            row.session_data = session_data or {}
            row.is_active = True
            row.expires_at = now + ttl
            db.commit()
            return row

    def check_session(self, game_credential_id: int, user_id: str = None, now: datetime = None) -> SessionCheck:
        now = now or _utcnow()
        with self._session_factory() as db:
            credential = db.get(GameCredential, game_credential_id)
            if credential is None:
                return SessionCheck(has_session=False, has_credentials=False)

            row = db.execute(
                self._latest_session_query(game_credential_id, user_id, active_only=True)
            ).scalar_one_or_none()

            if row is not None and (row.expires_at is None or row.expires_at < now):
                logger.info("Session %s expired at %s, deactivating", row.id, row.expires_at)
                row.is_active = False
                db.commit()
                row = None

            if row is None:
                return SessionCheck(
                    has_session=False,
                    has_credentials=bool(credential.username),
                    username=credential.username,
                )
            return SessionCheck(
                has_session=True,
                has_credentials=True,
                session_token=row.session_token,
                session_data=row.session_data,
                username=credential.username,
                created_at=row.created_at,
                expires_at=row.expires_at,
            )

    def invalidate_session(self, user_id: str, game_credential_id: int) -> int:
        with self._session_factory() as db:
            rows = db.execute(
                select(Session).where(
                    Session.user_id == user_id,
                    Session.game_credential_id == game_credential_id,
                    Session.is_active.is_(True),
                )
            ).scalars().all()
            for row in rows:
                row.is_active = False
            db.commit()
            return len(rows)

    # -- audit --------------------------------------------------------------

    def record_action_status(
        self,
        team_id: int,
        game_id: int,
        action: str,
        status: str,
        inputs: Dict[str, Any] = None,
        execution_time_secs: float = None,
        message: str = None,
        user_id: str = None,
    ) -> GameActionStatus:
        row = GameActionStatus(
            team_id=team_id,
            game_id=game_id,
            user_id=user_id,
            action=action,
            status=status,
            inputs=inputs or {},
            execution_time_secs=execution_time_secs,
            message=message,
            updated_at=_utcnow(),
        )
        with self._session_factory() as db:
            db.add(row)
            db.commit()
        return row

    def list_action_statuses(self, team_id: int) -> List[GameActionStatus]:
        with self._session_factory() as db:
            return db.execute(
                select(GameActionStatus)
                .where(GameActionStatus.team_id == team_id)
                .order_by(GameActionStatus.updated_at.desc(), GameActionStatus.id.desc())
            ).scalars().all()

    def latest_action_statuses(self, team_id: int) -> List[Dict[str, Any]]:
        """Latest status per game and action for a team."""
        games: Dict[int, Dict[str, Any]] = {}
        for row in self.list_action_statuses(team_id):
            entry = games.setdefault(row.game_id, {"game_id": row.game_id, "actions": {}})
            if row.action not in entry["actions"]:
                entry["actions"][row.action] = {
                    "status": row.status,
                    "message": row.message,
                    "updated_at": row.updated_at,
                }
        return list(games.values())


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
