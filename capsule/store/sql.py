"""SQLAlchemy-backed project and commit stores."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import DateTime, ForeignKey, String, Text, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from capsule.models.versioning import Commit, Project, ProjectStatus
from capsule.store.base import CommitStore, ProjectStore


class Base(DeclarativeBase):
    pass


class ProjectRow(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    sandbox_id: Mapped[str | None] = mapped_column(String(128), index=True, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=ProjectStatus.ACTIVE.value)
    server_status: Mapped[str] = mapped_column(String(16), default="open")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class CommitRow(Base):
    __tablename__ = "commits"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    github_sha: Mapped[str] = mapped_column(String(64), index=True)
    user_message: Mapped[str] = mapped_column(Text)
    bundle_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _to_project(row: ProjectRow) -> Project:
    return Project(
        project_id=row.id,
        user_id=row.user_id,
        sandbox_id=row.sandbox_id,
        status=ProjectStatus(row.status),
        server_status=row.server_status,
        updated_at=_aware(row.updated_at),
    )


def _to_commit(row: CommitRow) -> Commit:
    return Commit(
        id=row.id,
        project_id=row.project_id,
        github_sha=row.github_sha,
        user_message=row.user_message,
        bundle_url=row.bundle_url,
        created_at=_aware(row.created_at),
    )


def create_session_factory(database_url: str) -> sessionmaker[Session]:
    engine: Engine = create_engine(database_url, pool_pre_ping=True)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)


class SqlProjectStore(ProjectStore):
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get(self, project_id: str) -> Project | None:
        with self._session_factory() as db_session:
            row = db_session.get(ProjectRow, project_id)
            return _to_project(row) if row else None

    def get_owned(self, project_id: str, user_id: str) -> Project | None:
        with self._session_factory() as db_session:
            row = db_session.scalars(
                select(ProjectRow).where(
                    ProjectRow.id == project_id, ProjectRow.user_id == user_id
                )
            ).first()
            return _to_project(row) if row else None

    def find_by_sandbox(self, sandbox_id: str) -> Project | None:
        with self._session_factory() as db_session:
            row = db_session.scalars(
                select(ProjectRow).where(ProjectRow.sandbox_id == sandbox_id)
            ).first()
            return _to_project(row) if row else None

    def save(self, project: Project) -> Project:
        with self._session_factory() as db_session:
            row = db_session.get(ProjectRow, project.project_id)
            if row is None:
                row = ProjectRow(id=project.project_id)
                db_session.add(row)
            row.user_id = project.user_id
            row.sandbox_id = project.sandbox_id
            row.status = project.status.value
            row.server_status = project.server_status
            row.updated_at = project.updated_at
            db_session.commit()
        return project


class SqlCommitStore(CommitStore):
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def add(self, commit: Commit) -> Commit:
        with self._session_factory() as db_session:
            db_session.add(
                CommitRow(
                    id=commit.id,
                    project_id=commit.project_id,
                    github_sha=commit.github_sha,
                    user_message=commit.user_message,
                    bundle_url=commit.bundle_url,
                    created_at=commit.created_at,
                )
            )
            db_session.commit()
        return commit

    def list_for_project(self, project_id: str, limit: int) -> Sequence[Commit]:
        with self._session_factory() as db_session:
            rows = db_session.scalars(
                select(CommitRow)
                .where(CommitRow.project_id == project_id)
                .order_by(CommitRow.created_at.desc())
                .limit(max(limit, 0))
            ).all()
            return [_to_commit(row) for row in rows]

    def get_by_sha(self, project_id: str, sha: str) -> Commit | None:
        with self._session_factory() as db_session:
            row = db_session.scalars(
                select(CommitRow)
                .where(CommitRow.project_id == project_id, CommitRow.github_sha == sha)
                .order_by(CommitRow.created_at.desc())
            ).first()
            return _to_commit(row) if row else None

    def set_bundle_url(self, project_id: str, sha: str, bundle_url: str) -> Commit | None:
        with self._session_factory() as db_session:
            row = db_session.scalars(
                select(CommitRow)
                .where(CommitRow.project_id == project_id, CommitRow.github_sha == sha)
                .order_by(CommitRow.created_at.desc())
            ).first()
            if row is None:
                return None
            row.bundle_url = bundle_url
            db_session.commit()
            return _to_commit(row)

    def delete(self, commit_id: str) -> None:
        with self._session_factory() as db_session:
            db_session.execute(delete(CommitRow).where(CommitRow.id == commit_id))
            db_session.commit()
