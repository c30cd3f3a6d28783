"""
Storage Module

File-backed persistence for TaskPilot. Every record lives in a YAML file under
the data directory; a per-project directory holds the project, its tasks,
comments, attachments and custom views.
"""

import os
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List

import yaml

logger = logging.getLogger(__name__)

SEQUENCES_FILE = "_sequences.yaml"


class StorageError(Exception):
    """Raised when a data file cannot be read or written."""


def read_yaml_file(file_path: Path) -> Any:
    if not file_path.exists():
        return None

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise StorageError(f"Invalid YAML in {file_path.name}: {e}")
    except OSError as e:
        raise StorageError(f"Read error for {file_path.name}: {e}")


def write_yaml_file(file_path: Path, data: Any):
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, allow_unicode=True, default_flow_style=False, sort_keys=False, indent=2)
        os.replace(tmp_path, file_path)
        logger.debug(f"Wrote YAML: {file_path}")
    except (OSError, yaml.YAMLError) as e:
        raise StorageError(f"Write error for {file_path.name}: {e}")


def read_json_file(file_path: Path) -> Any:
    if not file_path.exists():
        return None

    try:
        with open(file_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise StorageError(f"Invalid JSON in {file_path.name}: {e}")
    except OSError as e:
        raise StorageError(f"Read error for {file_path.name}: {e}")


def write_json_file(file_path: Path, data: Any):
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
    except OSError as e:
        raise StorageError(f"Write error for {file_path.name}: {e}")


class YamlStore:
    """Thin wrapper around the data directory shared by all services."""

    def __init__(self, data_path: Path):
        self.data_path = Path(data_path).resolve()
        self.lock = threading.RLock()

    def is_safe_path(self, relative_path: str) -> bool:
        if not relative_path:
            return False

        if ".." in relative_path.replace("\\", "/").split("/"):
            return False

        try:
            full_path = self.data_path.joinpath(relative_path).resolve()
            return full_path.is_relative_to(self.data_path)
        except (OSError, ValueError):
            return False

    def project_dir(self, project_id: str) -> Path:
        if not self.is_safe_path(project_id) or project_id.startswith((".", "_")):
            raise StorageError(f"Invalid project ID: {project_id}")
        return self.data_path / project_id

    def project_ids(self) -> Iterator[str]:
        """Yield the id of every project directory holding a project.yaml."""
        if not self.data_path.exists():
            return
        for item in sorted(self.data_path.iterdir()):
            if not item.is_dir() or item.name.startswith(".") or item.name.startswith("_"):
                continue
            if (item / "project.yaml").exists():
                yield item.name

    def read_records(self, file_path: Path, key: str) -> List[Dict[str, Any]]:
        """Read a record list stored either as a bare list or under ``key``."""
        data = read_yaml_file(file_path)
        if not data:
            return []

        # Handle different formats
        if isinstance(data, list):
            return data
        if isinstance(data, dict) and isinstance(data.get(key), list):
            return data[key]
        logger.warning(f"Unexpected format in {file_path}, treating as empty")
        return []

    def write_records(self, file_path: Path, key: str, records: List[Dict[str, Any]]):
        write_yaml_file(file_path, {key: records})

    def next_id(self, sequence: str) -> int:
        """Allocate the next integer id for ``sequence``."""
        with self.lock:
            seq_file = self.data_path / SEQUENCES_FILE
            sequences = read_yaml_file(seq_file) or {}
            value = int(sequences.get(sequence, 0)) + 1
            sequences[sequence] = value
            write_yaml_file(seq_file, sequences)
            return value

    def ensure_ready(self):
        """Create the data directory and verify it is writable."""
        self.data_path.mkdir(parents=True, exist_ok=True)
        test_file = self.data_path / ".test_write"
        test_file.write_text("test")
        test_file.unlink()
        (self.data_path / "templates" / "tasks").mkdir(parents=True, exist_ok=True)
        (self.data_path / "chat_sessions").mkdir(exist_ok=True)
