"""
Durable checkpoint stores for the last applied oplog timestamp.

Two backends:
- FileCheckpointStore: decimal text of the packed timestamp, replaced atomically
- SQLCheckpointStore: one row per replication name in a SQL database

Stores raise CheckpointReadError / CheckpointWriteError; the engine decides
how to degrade.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional, Union
import logging
import os
import tempfile

from bson.timestamp import Timestamp
from sqlalchemy import BigInteger, Column, DateTime, String, create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from ..errors import CheckpointReadError, CheckpointWriteError
from .timestamps import format_timestamp, pack, parse, unpack

logger = logging.getLogger(__name__)

Base = declarative_base()


class CheckpointStore(ABC):
    """Single-writer store for the most recently applied timestamp."""

    @abstractmethod
    def read(self) -> Optional[Timestamp]:
        """
        Return the persisted timestamp, or None when nothing was recorded.

        Raises:
            CheckpointReadError: If a record exists but cannot be read
        """

    @abstractmethod
    def write(self, ts: Timestamp, entries_applied: int = 0) -> None:
        """
        Overwrite the persisted timestamp.

        Raises:
            CheckpointWriteError: If the value could not be persisted
        """

    def close(self) -> None:
        pass


class FileCheckpointStore(CheckpointStore):
    """
    Checkpoint kept as a single text-encoded integer at ``path``.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so a crash never leaves a truncated record behind.

    Example:
        >>> store = FileCheckpointStore("/var/lib/oplog-sync/checkpoint")
        >>> store.write(Timestamp(1700000000, 3))
        >>> store.read()
        Timestamp(1700000000, 3)
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read(self) -> Optional[Timestamp]:
        try:
            data = self.path.read_text(encoding="ascii")
        except FileNotFoundError:
            logger.debug(f"No checkpoint file at {self.path}", extra={"path": str(self.path)})
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise CheckpointReadError(f"Cannot read checkpoint file {self.path}: {e}") from e

        try:
            ts = parse(data)
        except ValueError as e:
            raise CheckpointReadError(f"Invalid checkpoint value in {self.path}: {data!r}") from e

        logger.debug(
            f"Loaded checkpoint {format_timestamp(ts)}",
            extra={"path": str(self.path)}
        )
        return ts

    def write(self, ts: Timestamp, entries_applied: int = 0) -> None:
        directory = self.path.parent
        tmp_name = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(str(pack(ts)))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise CheckpointWriteError(f"Cannot write checkpoint file {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass


class OplogCheckpoint(Base):
    """
    Checkpoint row.

    Stores:
    - name: Replication identifier (one row per source/destination pair)
    - timestamp: Packed 64-bit oplog timestamp of the last applied entry
    - entries_applied: Entries applied by the run that wrote the row
    - updated_at: Last update time
    """
    __tablename__ = "oplog_checkpoints"

    name = Column(String(255), primary_key=True)
    timestamp = Column(BigInteger, nullable=False)
    entries_applied = Column(BigInteger, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SQLCheckpointStore(CheckpointStore):
    """
    SQLAlchemy-backed checkpoint store.

    Each write is an upsert inside its own transaction.

    Example:
        >>> store = SQLCheckpointStore("postgresql://user:pass@db/oplog", name="prod-to-dr")
        >>> store.write(Timestamp(1700000000, 3))
    """

    def __init__(self, database_url: str, name: str = "default"):
        """
        Initialize checkpoint store.

        Args:
            database_url: SQLAlchemy connection URL
            name: Replication identifier the checkpoint row is keyed on

        Raises:
            CheckpointReadError: If the database cannot be reached
        """
        self.name = name
        try:
            self.engine = create_engine(
                database_url,
                pool_pre_ping=True,  # Verify connections before using
                echo=False
            )
            self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)

            Base.metadata.create_all(self.engine)

            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info("SQLCheckpointStore initialized", extra={"checkpoint_name": name})

        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize SQLCheckpointStore: {e}")
            raise CheckpointReadError(f"Database connection failed: {e}") from e

    def read(self) -> Optional[Timestamp]:
        session: Optional[Session] = None
        try:
            session = self.SessionLocal()
            row = session.get(OplogCheckpoint, self.name)
            if row is None:
                logger.debug(
                    f"No checkpoint found for {self.name}",
                    extra={"checkpoint_name": self.name}
                )
                return None
            return unpack(row.timestamp)

        except SQLAlchemyError as e:
            raise CheckpointReadError(f"Database error: {e}") from e

        except ValueError as e:
            raise CheckpointReadError(f"Invalid stored checkpoint: {e}") from e

        finally:
            if session:
                session.close()

    def write(self, ts: Timestamp, entries_applied: int = 0) -> None:
        session: Optional[Session] = None
        try:
            session = self.SessionLocal()
            with session.begin():
                row = session.get(OplogCheckpoint, self.name, with_for_update=True)
                if row:
                    row.timestamp = pack(ts)
                    row.entries_applied = entries_applied
                    row.updated_at = datetime.utcnow()
                else:
                    session.add(OplogCheckpoint(
                        name=self.name,
                        timestamp=pack(ts),
                        entries_applied=entries_applied
                    ))

        except SQLAlchemyError as e:
            raise CheckpointWriteError(f"Database error: {e}") from e

        finally:
            if session:
                session.close()

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self, 'engine'):
            self.engine.dispose()
            logger.info("SQLCheckpointStore connections closed")
