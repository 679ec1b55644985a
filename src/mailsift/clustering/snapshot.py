"""
Snapshot persistence for the clustering engine.

A snapshot is a directory of ``.npy`` arrays and ``.json`` documents plus a
``manifest.json`` listing the SHA-256 of every payload file. Snapshots are
written to a staging directory and swapped into place, so a crash never leaves
a half-written current snapshot. Loading fails closed on any mismatch.
"""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

import numpy as np

from mailsift.clustering.errors import SnapshotCorruption

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = 1
MANIFEST = "manifest.json"


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class SnapshotStore:
    """Reads and writes engine snapshots under ``<root>/current``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.current = self.root / "current"

    def exists(self) -> bool:
        return (self.current / MANIFEST).exists()

    def save(self, arrays: Mapping[str, np.ndarray], documents: Mapping[str, dict]) -> Path:
        """
        Persist one snapshot.

        Args:
            arrays: name -> array, stored as ``<name>.npy``
            documents: name -> JSON-serializable dict, stored as ``<name>.json``

        Returns:
            Path of the current snapshot directory
        """
        self.root.mkdir(parents=True, exist_ok=True)
        staging = self.root / "staging"
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir()

        checksums: dict[str, str] = {}
        for name, array in arrays.items():
            buffer = io.BytesIO()
            np.save(buffer, np.asarray(array), allow_pickle=False)
            payload = buffer.getvalue()
            (staging / f"{name}.npy").write_bytes(payload)
            checksums[f"{name}.npy"] = _sha256(payload)

        for name, doc in documents.items():
            payload = json.dumps(doc, sort_keys=True).encode("utf-8")
            (staging / f"{name}.json").write_bytes(payload)
            checksums[f"{name}.json"] = _sha256(payload)

        manifest = {
            "format": SNAPSHOT_FORMAT,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "files": checksums,
        }
        (staging / MANIFEST).write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")

        previous = self.root / "previous"
        if previous.exists():
            shutil.rmtree(previous)
        if self.current.exists():
            os.replace(self.current, previous)
        os.replace(staging, self.current)
        if previous.exists():
            shutil.rmtree(previous)

        logger.info(f"Saved snapshot with {len(checksums)} files to {self.current}")
        return self.current

    def load(self) -> tuple[dict[str, np.ndarray], dict[str, dict]]:
        """
        Load and verify the current snapshot.

        Raises:
            SnapshotCorruption: missing manifest or file, checksum mismatch,
                unsupported format or undecodable payload
        """
        manifest_path = self.current / MANIFEST
        if not manifest_path.exists():
            raise SnapshotCorruption(f"No snapshot manifest at {manifest_path}")
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SnapshotCorruption(f"Unreadable snapshot manifest: {e}") from e

        if manifest.get("format") != SNAPSHOT_FORMAT:
            raise SnapshotCorruption(f"Unsupported snapshot format: {manifest.get('format')}")

        arrays: dict[str, np.ndarray] = {}
        documents: dict[str, dict] = {}
        for filename, expected in manifest.get("files", {}).items():
            path = self.current / filename
            if not path.exists():
                raise SnapshotCorruption(f"Snapshot file missing: {filename}")
            payload = path.read_bytes()
            if _sha256(payload) != expected:
                raise SnapshotCorruption(f"Checksum mismatch for snapshot file {filename}")

            name, suffix = filename.rsplit(".", 1)
            try:
                if suffix == "npy":
                    arrays[name] = np.load(io.BytesIO(payload), allow_pickle=False)
                else:
                    documents[name] = json.loads(payload.decode("utf-8"))
            except (ValueError, UnicodeDecodeError) as e:
                raise SnapshotCorruption(f"Undecodable snapshot file {filename}: {e}") from e

        logger.info(f"Loaded snapshot from {self.current} ({manifest.get('created_at')})")
        return arrays, documents
