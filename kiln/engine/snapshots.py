"""Session snapshots on disk.

Each snapshot is a directory holding `session.bin` (the bytes produced by
`Session.serialize`) and a small `manifest.json`. Directories are grouped by
model id and fingerprint:

    <root>/<model_id>/<fingerprint>/<snapshot_id>/{manifest.json, session.bin}
"""

from __future__ import annotations

import hashlib
import json
import re
import shutil
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import CorruptSession, SnapshotCompatibilityError

_SNAPSHOT_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]{0,127}$")
_SESSION_FILE = "session.bin"
_MANIFEST_FILE = "manifest.json"

SESSION_SCHEMA = "kiln.session.v1"


def _stable_json_dumps(obj: Any) -> str:
    # Model configs may carry NaN/Infinity; only stability matters for hashing.
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, default=str, allow_nan=True)


def compute_model_compatibility(*, backend: Any, model_id: str | None = None) -> dict[str, Any]:
    """Compute a fingerprint identifying the model configuration sessions depend on."""
    info = backend.model_info
    cfg_hash = None
    config = backend.config_dict()
    if config:
        cfg_hash = hashlib.sha256(_stable_json_dumps(config).encode("utf-8")).hexdigest()

    payload = {
        "model_id": model_id,
        "model_path": info.model_path,
        "model_family": info.model_family,
        "dtype": info.dtype,
        "vocab_size": info.vocab_size,
        "stop_token_id": info.stop_token_id,
        "config_sha256": cfg_hash,
        "schema": SESSION_SCHEMA,
    }
    fingerprint = hashlib.sha256(_stable_json_dumps(payload).encode("utf-8")).hexdigest()
    return {"fingerprint": fingerprint, "payload": payload}


@dataclass(frozen=True)
class SnapshotManifest:
    snapshot_id: str
    created_at: int
    fingerprint: str
    num_tokens: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "created_at": self.created_at,
            "fingerprint": self.fingerprint,
            "num_tokens": self.num_tokens,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def read(cls, path: Path) -> "SnapshotManifest":
        try:
            d = json.loads(path.read_text(encoding="utf-8"))
            return cls(
                snapshot_id=str(d["snapshot_id"]),
                created_at=int(d["created_at"]),
                fingerprint=str(d["fingerprint"]),
                num_tokens=int(d["num_tokens"]),
                metadata=dict(d.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise CorruptSession(f"Unreadable snapshot manifest {path}: {exc}") from exc

    def write(self, path: Path) -> None:
        tmp = path.with_suffix(".tmp")
        tmp.write_text(_stable_json_dumps(self.to_dict()), encoding="utf-8")
        tmp.replace(path)


class SnapshotStore:
    """Snapshots saved by one model configuration."""

    def __init__(self, *, root_dir: str | Path, model_id: str, fingerprint: str) -> None:
        self._fingerprint = fingerprint
        self._model_dir = Path(root_dir) / str(model_id) / fingerprint
        self._model_dir.mkdir(parents=True, exist_ok=True)

    @property
    def model_dir(self) -> Path:
        return self._model_dir

    def _snapshot_dir(self, snapshot_id: str) -> Path:
        if not snapshot_id or not _SNAPSHOT_ID_RE.match(snapshot_id):
            raise ValueError(f"Invalid snapshot id: {snapshot_id!r}")
        directory = self._model_dir / snapshot_id
        if not (directory / _MANIFEST_FILE).is_file():
            raise FileNotFoundError(snapshot_id)
        return directory

    def save(self, data: bytes, *, num_tokens: int, metadata: Mapping[str, Any] | None = None) -> SnapshotManifest:
        manifest = SnapshotManifest(
            snapshot_id=uuid.uuid4().hex,
            created_at=int(time.time()),
            fingerprint=self._fingerprint,
            num_tokens=num_tokens,
            metadata=dict(metadata or {}),
        )
        # Visible under its final name only once complete.
        tmp_dir = self._model_dir / f".tmp-{manifest.snapshot_id}"
        tmp_dir.mkdir()
        try:
            (tmp_dir / _SESSION_FILE).write_bytes(data)
            manifest.write(tmp_dir / _MANIFEST_FILE)
            tmp_dir.rename(self._model_dir / manifest.snapshot_id)
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        return manifest

    def list_snapshots(self) -> list[SnapshotManifest]:
        """Readable snapshots, newest first."""
        out: list[SnapshotManifest] = []
        for mf in self._model_dir.glob(f"*/{_MANIFEST_FILE}"):
            if mf.parent.name.startswith(".tmp-"):
                continue
            try:
                out.append(SnapshotManifest.read(mf))
            except (OSError, CorruptSession):
                continue
        out.sort(key=lambda m: m.created_at, reverse=True)
        return out

    def get(self, snapshot_id: str) -> SnapshotManifest:
        return SnapshotManifest.read(self._snapshot_dir(snapshot_id) / _MANIFEST_FILE)

    def update_metadata(self, snapshot_id: str, changes: Mapping[str, Any]) -> SnapshotManifest:
        """Merge `changes` into the snapshot's metadata; the session bytes never change."""
        directory = self._snapshot_dir(snapshot_id)
        manifest = SnapshotManifest.read(directory / _MANIFEST_FILE)
        updated = replace(manifest, metadata={**manifest.metadata, **changes})
        updated.write(directory / _MANIFEST_FILE)
        return updated

    def delete(self, snapshot_id: str) -> None:
        shutil.rmtree(self._snapshot_dir(snapshot_id))

    def load(self, snapshot_id: str) -> bytes:
        directory = self._snapshot_dir(snapshot_id)
        manifest = SnapshotManifest.read(directory / _MANIFEST_FILE)
        if manifest.fingerprint != self._fingerprint:
            raise SnapshotCompatibilityError("Snapshot was saved by a different model configuration.")
        path = directory / _SESSION_FILE
        if not path.is_file():
            raise FileNotFoundError(snapshot_id)
        return path.read_bytes()
