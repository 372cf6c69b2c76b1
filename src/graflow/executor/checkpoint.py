"""Checkpoint creation and resume.

A checkpoint is a write-once set of three companion files sharing a base
path:

    <base>.pkl         pickled payload: graph, backend config and, for
                       process-local channels, the channel contents
    <base>.state.json  progress record: schema_version, session id, step
                       count, completed ids, cycle counts, pending specs,
                       execution history
    <base>.meta.json   CheckpointMetadata (id, timestamps, caller tags)

The metadata file is written last, so its presence marks a complete
checkpoint. Checkpoints are only ever taken between tasks, never while a
handler runs. There is no automatic garbage collection; deleting old
checkpoints is the caller's job.

Shared channels (SQLite, Redis) are not copied: the payload stores a
session pointer and resume reconnects to the live session.
"""

from __future__ import annotations

import json
import logging
import pickle
from pathlib import Path
from typing import Any

from uuid_extensions import uuid7

from graflow.core.context import ExecutionContext
from graflow.core.errors import CheckpointError
from graflow.models import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointMetadata,
    ExecutionRecord,
    TaskSpec,
)
from graflow.storage.base import StorageError
from graflow.storage.factory import BackendConfig, create_channel, create_queue
from graflow.storage.memory import MemoryChannel, MemoryTaskQueue

logger = logging.getLogger(__name__)

_SUFFIXES = (".pkl", ".state.json", ".meta.json")


def _base_path(path: str | Path) -> Path:
    text = str(path)
    for suffix in _SUFFIXES:
        if text.endswith(suffix):
            return Path(text[: -len(suffix)])
    return Path(text)


def _artifacts(base: Path) -> tuple[Path, Path, Path]:
    return tuple(Path(f"{base}{suffix}") for suffix in _SUFFIXES)  # type: ignore[return-value]


class CheckpointManager:
    """Creates and resumes checkpoints under ``base_dir``.

    Usage:
        ```python
        manager = CheckpointManager("checkpoints")
        path, meta = await manager.create(context, metadata={"stage": "after-extract"})

        # later, possibly in another process
        context, meta = await manager.resume(path)
        result = await WorkflowEngine().execute(context)
        ```
    """

    def __init__(self, base_dir: str | Path = "checkpoints"):
        self.base_dir = Path(base_dir)

    def with_base_dir(self, base_dir: str | Path) -> CheckpointManager:
        self.base_dir = Path(base_dir)
        return self

    # ========================================================================
    # Create
    # ========================================================================

    async def create(
        self,
        context: ExecutionContext,
        path: str | Path | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[str, CheckpointMetadata]:
        """Write a checkpoint of ``context``.

        Args:
            context: Run to checkpoint (between tasks)
            path: Base path of the artifacts; defaults to
                ``<base_dir>/<session_id>/<checkpoint_id>``
            metadata: Caller-supplied tags stored in the metadata record

        Returns:
            Base path of the checkpoint and its metadata

        Raises:
            CheckpointError: If artifacts already exist at the path or the
                run state cannot be serialized
        """
        checkpoint_id = str(uuid7())
        base = _base_path(path) if path else self.base_dir / context.session_id / checkpoint_id
        pkl_path, state_path, meta_path = _artifacts(base)

        existing = [p for p in (pkl_path, state_path, meta_path) if p.exists()]
        if existing:
            raise CheckpointError(f"Checkpoint already exists at {base} (write-once)")

        pending = await context.queue.pending()
        channel_shared = context.channel.is_shared
        snapshot = None if channel_shared else await context.channel.snapshot()

        try:
            payload = pickle.dumps(
                {
                    "graph": context.graph,
                    "backend": context.backend.to_dict(),
                    "channel_snapshot": snapshot,
                }
            )
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise CheckpointError(
                f"Cannot serialize run {context.session_id}: {e} "
                "(handlers and channel values must be picklable)"
            ) from e

        state = {
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "session_id": context.session_id,
            "step_count": context.step_count,
            "start_node": context.start_node,
            "completed": sorted(context.completed),
            "cycle_counts": dict(context.cycle_counts),
            "pending_specs": [spec.to_dict() for spec in pending],
            "pending_feedback": context.pending_feedback,
            "history": [record.to_dict() for record in context.history],
            "channel": {
                "backend": context.channel.backend_name,
                "shared": channel_shared,
                "session_id": context.session_id,
            },
        }
        meta = CheckpointMetadata(
            checkpoint_id=checkpoint_id,
            session_id=context.session_id,
            step_count=context.step_count,
            start_node=context.start_node,
            backend=context.channel.backend_name,
            user_metadata=dict(metadata or {}),
        )

        try:
            base.parent.mkdir(parents=True, exist_ok=True)
            # "x" mode: never overwrite an existing artifact
            with open(pkl_path, "xb") as f:
                f.write(payload)
            with open(state_path, "x", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            with open(meta_path, "x", encoding="utf-8") as f:
                json.dump(meta.to_dict(), f, indent=2)
        except OSError as e:
            raise CheckpointError(f"Cannot write checkpoint {base}: {e}") from e

        context.checkpoints.append(str(base))
        logger.info(
            f"Checkpoint {checkpoint_id} of session {context.session_id} written to {base} "
            f"(step {context.step_count}, {len(pending)} pending)"
        )
        return str(base), meta

    # ========================================================================
    # Resume
    # ========================================================================

    def load_metadata(self, path: str | Path) -> CheckpointMetadata:
        """Read the metadata record of a checkpoint.

        Raises:
            CheckpointError: If the record is missing or corrupt
        """
        _, _, meta_path = _artifacts(_base_path(path))
        return CheckpointMetadata.from_dict(self._read_json(meta_path))

    @staticmethod
    def _read_json(path: Path) -> dict:
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise CheckpointError(f"Missing checkpoint artifact: {path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Corrupt checkpoint artifact {path}: {e}") from e
        if not isinstance(data, dict):
            raise CheckpointError(f"Corrupt checkpoint artifact {path}: not an object")
        return data

    async def resume(self, path: str | Path) -> tuple[ExecutionContext, CheckpointMetadata]:
        """Restore a run from a checkpoint.

        Process-local channels are rebuilt from the stored snapshot; shared
        channels are reconnected by session id. The run queue is reset to
        exactly the persisted pending specs, so every task resumes from its
        beginning.

        Raises:
            CheckpointError: On missing or corrupt artifacts, an unsupported
                schema version or a backend reconnect failure
        """
        base = _base_path(path)
        pkl_path, state_path, meta_path = _artifacts(base)

        try:
            meta = CheckpointMetadata.from_dict(self._read_json(meta_path))
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(f"Corrupt checkpoint metadata {meta_path}: {e}") from e
        state = self._read_json(state_path)

        version = str(state.get("schema_version", ""))
        if version.split(".")[0] != CHECKPOINT_SCHEMA_VERSION.split(".")[0]:
            raise CheckpointError(
                f"Unsupported checkpoint schema {version!r} (expected {CHECKPOINT_SCHEMA_VERSION})"
            )

        try:
            with open(pkl_path, "rb") as f:
                payload = pickle.load(f)
            graph = payload["graph"]
            backend = BackendConfig.from_dict(payload["backend"])
            pending = [TaskSpec.from_dict(d) for d in state["pending_specs"]]
            history = [ExecutionRecord.from_dict(d) for d in state.get("history", [])]
            session_id = state["session_id"]
        except FileNotFoundError as e:
            raise CheckpointError(f"Missing checkpoint artifact: {pkl_path}") from e
        except (
            OSError,
            EOFError,
            pickle.UnpicklingError,
            AttributeError,
            ImportError,
            KeyError,
            TypeError,
            ValueError,
            StorageError,
        ) as e:
            raise CheckpointError(f"Corrupt checkpoint {base}: {e}") from e

        snapshot = payload.get("channel_snapshot")
        if snapshot is None and not backend.is_shared:
            raise CheckpointError(
                f"Checkpoint {base} points to a shared channel but records no backend to reconnect to"
            )
        try:
            if snapshot is None and backend.is_shared:
                channel = create_channel(backend, session_id)
                queue = create_queue(backend, name=f"run:{session_id}")
            else:
                channel = MemoryChannel(session_id, namespace=backend.namespace)
                queue = MemoryTaskQueue(f"run:{session_id}", namespace=backend.namespace)
                backend = BackendConfig(namespace=backend.namespace)
            await channel.connect()
            await queue.connect()
        except (StorageError, OSError) as e:
            raise CheckpointError(
                f"Cannot reconnect to {backend.backend} session {session_id}: {e}"
            ) from e

        if snapshot is not None:
            await channel.restore(snapshot)
        await queue.clear()
        for spec in pending:
            await queue.enqueue(spec)

        context = ExecutionContext(graph, channel, queue, session_id, backend=backend)
        context.completed = set(state.get("completed", []))
        context.cycle_counts = {k: int(v) for k, v in state.get("cycle_counts", {}).items()}
        context.step_count = int(state.get("step_count", 0))
        context.start_node = state.get("start_node")
        context.pending_feedback = state.get("pending_feedback")
        context.history = history
        context.started = True

        logger.info(
            f"Resumed session {session_id} from checkpoint {meta.checkpoint_id} "
            f"({len(context.completed)} completed, {len(pending)} pending)"
        )
        return context, meta

    def list_checkpoints(self, session_id: str | None = None) -> list[tuple[str, CheckpointMetadata]]:
        """Checkpoints under ``base_dir`` (optionally for one session), oldest first."""
        if not self.base_dir.exists():
            return []
        found = []
        for meta_path in self.base_dir.rglob("*.meta.json"):
            try:
                meta = CheckpointMetadata.from_dict(self._read_json(meta_path))
            except (CheckpointError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable checkpoint metadata {meta_path}: {e}")
                continue
            if session_id is None or meta.session_id == session_id:
                found.append((str(_base_path(meta_path)), meta))
        return sorted(found, key=lambda item: item[1].created_at)
