"""
Persistent note storage for the Notes MCP server.

Notes live in a single JSON file (notes_storage.json) inside the configured
notes folder. Every mutation rewrites the whole file.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Any, Union
from datetime import datetime, timezone


NOTES_FILE_NAME = "notes_storage.json"

logger = logging.getLogger("mcp_server.storage")


class NoteStorageError(Exception):
    """Base class for note storage failures"""


class NoteNotFoundError(NoteStorageError):
    def __init__(self, name: str):
        super().__init__(f"Note '{name}' not found")
        self.name = name


class NoteAlreadyExistsError(NoteStorageError):
    def __init__(self, name: str):
        super().__init__(f"Note '{name}' already exists")
        self.name = name


class NoteStorage:
    """
    Storage system for managing persistent notes.

    Each note is keyed by its unique name and holds its content plus
    created_at / modified_at timestamps assigned by the store.
    """

    def __init__(self, notes_folder: Union[str, Path] = "./data"):
        self.notes_folder = Path(notes_folder).resolve()
        self.notes_file = self.notes_folder / NOTES_FILE_NAME
        self.notes = self._load_notes()

    def _load_notes(self) -> Dict[str, Any]:
        """Load notes from file or create empty dict"""
        if self.notes_file.exists():
            try:
                with open(self.notes_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
                logger.error(f"Ignoring malformed notes file: {self.notes_file}")
            except Exception as e:
                logger.error(f"Error loading notes from {self.notes_file}: {e}")
        return {}

    def _save_notes(self):
        """Save all notes to the storage file"""
        self.notes_folder.mkdir(parents=True, exist_ok=True)
        with open(self.notes_file, 'w', encoding='utf-8') as f:
            json.dump(self.notes, f, indent=2, ensure_ascii=False)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def set_notes_folder(self, folder_path: str) -> Dict[str, Any]:
        """
        Point the store at a different folder and reload its notes.
        The folder is created if it does not exist yet.
        """
        if not folder_path or not isinstance(folder_path, str) or not folder_path.strip():
            raise NoteStorageError("Failed to set notes folder: Invalid folder path provided")

        try:
            absolute_path = Path(folder_path.strip()).resolve()
            absolute_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise NoteStorageError(f"Failed to set notes folder: {e}") from e

        self.notes_folder = absolute_path
        self.notes_file = absolute_path / NOTES_FILE_NAME
        self.notes = self._load_notes()

        logger.info(f"Notes folder set to {absolute_path} ({len(self.notes)} notes)")

        return {
            "success": True,
            "message": f"Notes folder set to: {absolute_path}",
            "folder": str(absolute_path),
            "notes_count": len(self.notes)
        }

    def get_notes_folder(self) -> str:
        return str(self.notes_folder)

    def get_all_notes(self) -> Dict[str, Any]:
        return self.notes

    def get_note(self, name: str) -> Dict[str, Any]:
        if name not in self.notes:
            raise NoteNotFoundError(name)
        return {"name": name, **self.notes[name]}

    def create_note(self, name: str, content: str) -> Dict[str, Any]:
        """Add a new note; both timestamps get the same value"""
        if name in self.notes:
            raise NoteAlreadyExistsError(name)

        current_time = self._now()
        self.notes[name] = {
            "content": content,
            "created_at": current_time,
            "modified_at": current_time
        }
        self._save_notes()

        return {"name": name, **self.notes[name]}

    def update_note(self, name: str, content: str) -> Dict[str, Any]:
        """Replace a note's content and refresh its modified time"""
        if name not in self.notes:
            raise NoteNotFoundError(name)

        self.notes[name]["content"] = content
        self.notes[name]["modified_at"] = self._now()
        self._save_notes()

        return {"name": name, **self.notes[name]}

    def delete_note(self, name: str) -> Dict[str, Any]:
        if name not in self.notes:
            raise NoteNotFoundError(name)

        deleted_note = self.notes.pop(name)
        self._save_notes()

        return {"name": name, **deleted_note}

    def rename_note(self, old_name: str, new_name: str) -> Dict[str, Any]:
        """Rename a note without changing its content"""
        if old_name not in self.notes:
            raise NoteNotFoundError(old_name)
        if new_name in self.notes:
            raise NoteAlreadyExistsError(new_name)

        note_data = dict(self.notes.pop(old_name))
        note_data["modified_at"] = self._now()
        self.notes[new_name] = note_data
        self._save_notes()

        return {"name": new_name, **note_data}
