"""
Validation draft store.

File-backed history of AI-generated validation drafts (`history.json`, newest
first) plus activation into the warehouse-side config table.

Activation order: remote statement first, then the local flag. If the local
write fails, the remote statement is reversed and `ActivationError` raised.
"""

import asyncio
import json
import logging
import os
import secrets
import string
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from datadeployer.config import settings
from datadeployer.connectors.snowflake_client import open_session, validate_ident
from datadeployer.models.connection import WarehouseConnectionConfig
from datadeployer.models.validation import TestResult, ValidationDraft

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


class DraftNotFoundError(KeyError):
    def __init__(self, draft_id: str):
        super().__init__(draft_id)
        self.draft_id = draft_id

    def __str__(self) -> str:
        return "Validation not found"


class DraftStoreError(Exception):
    """Local history file could not be written."""


class ActivationError(Exception):
    """Activation toggle failed after the remote step succeeded."""


def new_draft_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"ai-val-{int(time.time() * 1000)}-{suffix}"


def _test_succeeded(test_result: Any) -> bool:
    if isinstance(test_result, TestResult):
        return test_result.success
    if isinstance(test_result, dict):
        return test_result.get("success") is True
    return False


class ConfigTableTarget:
    """
    Remote side of activation: the validation config table in `<db>.<schema>`.

    Activation inserts a row keyed by draft id; deactivation deletes it.
    """

    def __init__(
        self,
        config: WarehouseConnectionConfig,
        *,
        table: str | None = None,
        session_factory: Callable = open_session,
    ):
        self.config = config
        db = validate_ident(config.database, label="database")
        sch = validate_ident(config.schema_name, label="schema")
        tbl = validate_ident(table or settings.VALIDATION_CONFIG_TABLE, label="table")
        self.fqn = f"{db}.{sch}.{tbl}"
        self._session_factory = session_factory

    async def insert(self, draft: ValidationDraft) -> bool:
        """Insert the draft row. Returns False when a row with that id already exists."""
        async with self._session_factory(self.config) as session:
            existing = await session.execute(
                f"SELECT ID FROM {self.fqn} WHERE ID = ?", [draft.id]
            )
            if existing:
                logger.info(f"Config row {draft.id} already present in {self.fqn}")
                return False
            await session.execute(
                f"INSERT INTO {self.fqn} "
                "(ID, ENTITY, DESCRIPTION, SQL_QUERY, CREATED_BY, SOURCE) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [
                    draft.id,
                    "AI_GENERATED",
                    draft.prompt_text,
                    draft.sql_text,
                    "AI",
                    "AI_GENERATOR",
                ],
            )
        logger.info(f"Activated {draft.id} in {self.fqn}")
        return True

    async def delete(self, draft_id: str) -> None:
        async with self._session_factory(self.config) as session:
            await session.execute(f"DELETE FROM {self.fqn} WHERE ID = ?", [draft_id])
        logger.info(f"Deactivated {draft_id} in {self.fqn}")


class DraftStore:
    """JSON-file store of validation drafts."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> List[ValidationDraft]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable draft history {self.path}: {e}")
            return []
        if not isinstance(raw, list):
            logger.warning(f"Draft history {self.path} is not a list; ignoring")
            return []

        drafts: List[ValidationDraft] = []
        for item in raw:
            try:
                drafts.append(ValidationDraft.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed draft entry: {e}")
        return drafts

    def _write(self, drafts: List[ValidationDraft]) -> None:
        payload = json.dumps([d.to_json() for d in drafts], indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                prefix=".history-", suffix=".json", dir=str(self.path.parent)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise DraftStoreError(f"Failed to write draft history: {e}") from e

    async def list(self) -> List[ValidationDraft]:
        return self._read()

    async def get(self, draft_id: str) -> ValidationDraft:
        for draft in self._read():
            if draft.id == draft_id:
                return draft
        raise DraftNotFoundError(draft_id)

    async def append(
        self,
        *,
        prompt: str,
        sql: str,
        database: Optional[str] = None,
        schema: Optional[str] = None,
        test_result: Any = None,
    ) -> ValidationDraft:
        """Record a draft whose SQL executed successfully."""
        if not _test_succeeded(test_result):
            raise ValueError("Only validations with a successful test result can be saved")
        if isinstance(test_result, TestResult):
            test_result = test_result.model_dump(mode="json", by_alias=True)

        draft = ValidationDraft(
            id=new_draft_id(),
            prompt_text=prompt,
            sql_text=sql,
            target_database=database,
            target_schema=schema,
            last_test_result=test_result,
            created_at=datetime.now(timezone.utc),
            is_active=False,
        )
        async with self._lock:
            drafts = self._read()
            drafts.insert(0, draft)
            self._write(drafts)
        logger.info(f"Saved validation draft {draft.id}")
        return draft

    async def set_active(
        self,
        draft_id: str,
        is_active: bool,
        remote: Optional[ConfigTableTarget] = None,
    ) -> ValidationDraft:
        """
        Flip a draft's activation flag.

        No-op (and no remote call) when the flag already has the requested value.
        """
        async with self._lock:
            drafts = self._read()
            index = next((i for i, d in enumerate(drafts) if d.id == draft_id), None)
            if index is None:
                raise DraftNotFoundError(draft_id)

            current = drafts[index]
            if current.is_active == is_active:
                return current

            inserted = False
            if remote is not None:
                if is_active:
                    inserted = await remote.insert(current)
                else:
                    await remote.delete(current.id)

            updated = current.model_copy(update={"is_active": is_active})
            drafts[index] = updated
            try:
                self._write(drafts)
            except DraftStoreError as e:
                message = f"Failed to record activation for {draft_id}: {e}"
                if remote is not None:
                    message += await self._compensate(remote, current, is_active, inserted)
                raise ActivationError(message) from e

        logger.info(f"Draft {draft_id} isActive={is_active}")
        return updated

    async def _compensate(
        self,
        remote: ConfigTableTarget,
        draft: ValidationDraft,
        was_activating: bool,
        inserted: bool,
    ) -> str:
        try:
            if was_activating:
                if inserted:
                    await remote.delete(draft.id)
            else:
                await remote.insert(draft)
        except Exception as e:
            logger.error(f"Compensation for {draft.id} failed; warehouse and history disagree: {e}")
            return f" (remote rollback failed: {e})"
        return " (remote change rolled back)"

    async def delete(self, draft_id: str) -> bool:
        """Remove a draft. Unknown ids are ignored and leave the file untouched."""
        async with self._lock:
            drafts = self._read()
            remaining = [d for d in drafts if d.id != draft_id]
            if len(remaining) == len(drafts):
                return False
            self._write(remaining)
        logger.info(f"Deleted validation draft {draft_id}")
        return True

    async def counts(self) -> Dict[str, int]:
        drafts = self._read()
        return {"total": len(drafts), "active": sum(1 for d in drafts if d.is_active)}


_stores: Dict[Path, DraftStore] = {}


def get_draft_store() -> DraftStore:
    """Store for the configured data directory (one instance, one lock, per path)."""
    path = settings.history_file
    store = _stores.get(path)
    if store is None:
        store = DraftStore(path)
        _stores[path] = store
    return store
