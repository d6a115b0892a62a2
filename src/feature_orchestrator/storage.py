"""
File Storage - JSON documents under a single root directory.

Features:
- Paths are storage-relative ("{project_id}/{feature_id}/session.json")
- Atomic writes (temp file + rename) with a .bak copy of the previous version
- Reads of missing files return None instead of raising
- Every path is confined to the root; traversal attempts raise PathTraversalError
"""

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


class StorageError(Exception):
	"""Base exception for storage failures."""
	pass


class PathTraversalError(StorageError):
	"""Raised when a relative path would escape the storage root."""
	pass


class FileStorage:
	"""JSON file storage rooted at a directory."""

	def __init__(self, root: Path | str):
		self.root = Path(root).expanduser().resolve()
		self.root.mkdir(parents=True, exist_ok=True)

	def resolve(self, relative_path: str) -> Path:
		"""Map a storage-relative path to an absolute path inside the root.

		Raises:
			PathTraversalError: If the path is absolute or escapes the root
		"""
		if os.path.isabs(relative_path):
			raise PathTraversalError(f"Absolute paths are not allowed: {relative_path}")
		full = (self.root / relative_path).resolve()
		if full != self.root and self.root not in full.parents:
			raise PathTraversalError(f"Path escapes storage root: {relative_path}")
		return full

	def ensure_dir(self, relative_path: str) -> Path:
		path = self.resolve(relative_path)
		path.mkdir(parents=True, exist_ok=True)
		return path

	def exists(self, relative_path: str) -> bool:
		return self.resolve(relative_path).exists()

	def read_json(self, relative_path: str) -> Optional[Any]:
		"""Read a JSON document. Returns None when the file does not exist."""
		path = self.resolve(relative_path)
		try:
			with open(path, encoding="utf-8") as f:
				return json.load(f)
		except FileNotFoundError:
			return None

	def write_json(self, relative_path: str, data: Any) -> None:
		"""Atomically write a JSON document, keeping the previous version as .bak."""
		path = self.resolve(relative_path)
		path.parent.mkdir(parents=True, exist_ok=True)

		fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
		try:
			with os.fdopen(fd, "w", encoding="utf-8") as f:
				json.dump(data, f, indent=2)
				f.write("\n")
			if path.exists():
				shutil.copy2(path, path.with_name(path.name + ".bak"))
			os.replace(tmp_name, path)
		except BaseException:
			if os.path.exists(tmp_name):
				os.unlink(tmp_name)
			raise
		logger.debug(f"Wrote {relative_path}")

	def delete(self, relative_path: str) -> bool:
		"""Delete a file. Returns False if it did not exist."""
		path = self.resolve(relative_path)
		try:
			path.unlink()
		except FileNotFoundError:
			return False
		return True

	def list_dir(self, relative_path: str = ".") -> list[str]:
		"""Names of the entries in a directory (empty if missing)."""
		path = self.resolve(relative_path)
		if not path.is_dir():
			return []
		return sorted(entry.name for entry in path.iterdir())
