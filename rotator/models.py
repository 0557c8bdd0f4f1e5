import json
import logging
import os
from datetime import datetime
from typing import List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from rotator.backup.result import JobResult

logger = logging.getLogger(__name__)

Base = declarative_base()


class RunRecord(Base):
    """One orchestrator run and its finalized report"""
    __tablename__ = 'run_history'

    id = Column(Integer, primary_key=True)
    host_id = Column(String(255), nullable=False)
    set_name = Column(String(255))
    tier = Column(String(20))  # Monthly, Weekly, Daily
    backup_type = Column(String(20))  # BareMetal, SystemState
    state = Column(String(20), nullable=False)  # SUCCESSFUL, WARNING, ERROR
    started_at = Column(DateTime, default=datetime.now, nullable=False)
    completed_at = Column(DateTime)
    engine_result_code = Column(Integer)
    engine_started_at = Column(DateTime)
    engine_ended_at = Column(DateTime)
    artifact = Column(String(500))
    failure_log = Column(String(500))
    compression = Column(String(20), nullable=False)
    synchronization = Column(String(20), nullable=False)
    mirror_log = Column(String(500))
    log_path = Column(String(500))
    removed_sets = Column(Text)  # JSON list
    messages = Column(Text)  # JSON list

    @classmethod
    def from_result(cls, result: JobResult) -> 'RunRecord':
        return cls(
            host_id=result.host_id or '',
            set_name=result.set_name,
            tier=result.tier.value if result.tier else None,
            backup_type=result.backup_type,
            state=result.state.value,
            started_at=result.started_at or datetime.now(),
            completed_at=result.completed_at,
            engine_result_code=result.engine_result_code,
            engine_started_at=result.engine_started_at,
            engine_ended_at=result.engine_ended_at,
            artifact=result.artifact,
            failure_log=result.failure_log,
            compression=result.compression.value,
            synchronization=result.synchronization.value,
            mirror_log=result.mirror_log,
            log_path=result.log_path,
            removed_sets=json.dumps(result.removed_sets),
            messages=json.dumps(result.messages),
        )

    @property
    def removed_set_names(self) -> List[str]:
        return json.loads(self.removed_sets) if self.removed_sets else []

    def __repr__(self):
        return f'<RunRecord {self.set_name} state={self.state}>'


class HistoryStore:
    """
    Run history database.

    Also answers which engine job the previous run saw, so a stale job in
    the engine's own history is not mistaken for a new one.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._ensure_sqlite_dir(database_url)
        self.engine = create_engine(database_url)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @staticmethod
    def _ensure_sqlite_dir(database_url: str):
        prefix = 'sqlite:///'
        if database_url.startswith(prefix) and database_url != 'sqlite:///:memory:':
            directory = os.path.dirname(database_url[len(prefix):])
            if directory:
                os.makedirs(directory, exist_ok=True)

    def create_all(self):
        Base.metadata.create_all(self.engine)

    def last_engine_start(self, host_id: Optional[str] = None) -> Optional[datetime]:
        """
        Engine job start time recorded by the most recent run that saw one.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the database cannot be read
        """
        with self.Session() as session:
            query = session.query(RunRecord).filter(RunRecord.engine_started_at.isnot(None))
            if host_id:
                query = query.filter(RunRecord.host_id == host_id)
            record = query.order_by(RunRecord.started_at.desc(), RunRecord.id.desc()).first()
            return record.engine_started_at if record else None

    def record(self, result: JobResult) -> RunRecord:
        """
        Persist a finalized run.

        Raises:
            sqlalchemy.exc.SQLAlchemyError: If the row cannot be written
        """
        record = RunRecord.from_result(result)
        with self.Session() as session:
            session.add(record)
            session.commit()
        return record

    def recent(self, limit: int = 20) -> List[RunRecord]:
        """Most recent runs, newest first."""
        with self.Session() as session:
            return (
                session.query(RunRecord)
                .order_by(RunRecord.started_at.desc(), RunRecord.id.desc())
                .limit(limit)
                .all()
            )


def create_history_store(settings) -> HistoryStore:
    """Open the history database configured in settings and create its tables."""
    store = HistoryStore(settings['DATABASE_URL'])
    store.create_all()
    return store
