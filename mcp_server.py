#!/usr/bin/env python3
"""
MCP Server for the Notes store
Implements the Model Context Protocol using FastMCP SDK

Provides:
- Note management tools (create, read, update, delete, rename, folder switching)
- Resources primitive exposing the whole note collection
- Prompts primitive for common note-taking workflows
- Pydantic validation for tool inputs
- OpenTelemetry tracing, structured logging, metrics and audit logging
- Configuration management through environment variables

The stdio entry point lives here; the HTTP transport with per-client
sessions lives in http_server.py.
"""

import argparse
import functools
import json
import os
import sys
import logging
import time
from typing import Annotated, Dict, Any, Optional, Callable
from enum import Enum
from datetime import datetime, timezone

# FastMCP and Pydantic imports
from fastmcp import FastMCP
from pydantic import BaseModel, Field, ValidationError, field_validator

# OpenTelemetry imports
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.trace import Status, StatusCode

from notes_storage import NoteStorage, NoteStorageError


SERVER_NAME = "notes-server"
SERVER_VERSION = "1.0.0"


class ErrorCategory(Enum):
    """Categorization of errors for metrics and analysis"""
    VALIDATION_ERROR = "validation_error"
    STORAGE_ERROR = "storage_error"
    IO_ERROR = "io_error"
    PROTOCOL_ERROR = "protocol_error"
    SESSION_NOT_FOUND = "session_not_found"
    HANDLER_ERROR = "handler_error"
    TRANSPORT_ERROR = "transport_error"
    INTERNAL_ERROR = "internal_error"


class ServerConfig:
    """Configuration management for different environments"""

    def __init__(self):
        self.environment = os.environ.get("MCP_ENV", "development")
        self.notes_folder = os.environ.get("NOTES_FOLDER", "./data")
        self.log_level = os.environ.get("LOG_LEVEL", "INFO").upper()
        self.enable_tracing = os.environ.get("ENABLE_TRACING", "false").lower() == "true"
        self.enable_audit_log = os.environ.get("ENABLE_AUDIT_LOG", "false").lower() == "true"
        self.audit_log_path = os.environ.get("AUDIT_LOG_PATH", "./audit.log")
        self.max_note_size_mb = int(os.environ.get("MAX_NOTE_SIZE_MB", "10"))

        # HTTP transport
        self.host = os.environ.get("HOST", "0.0.0.0")
        self.port = int(os.environ.get("PORT", "3000"))
        self.json_response = os.environ.get("MCP_JSON_RESPONSE", "false").lower() == "true"
        self.max_request_body_mb = int(os.environ.get("MAX_REQUEST_BODY_MB", "10"))

        # Session lifecycle
        self.session_idle_timeout_seconds = float(os.environ.get("SESSION_IDLE_TIMEOUT_SECONDS", "1800"))
        self.session_sweep_interval_seconds = float(os.environ.get("SESSION_SWEEP_INTERVAL_SECONDS", "300"))

    def resolve_notes_folder(self, cli_value: Optional[str] = None) -> str:
        """Command line argument wins over NOTES_FOLDER, which wins over ./data"""
        return cli_value or self.notes_folder


class Metrics:
    """Simple in-memory metrics collector"""

    def __init__(self):
        self.reset()

    def reset(self):
        self.tool_calls = {}  # {tool_name: count}
        self.tool_errors = {}  # {tool_name: count}
        self.tool_latencies = {}  # {tool_name: [latencies]}
        self.error_categories = {}  # {category: count}
        self.session_events = {}  # {event: count}
        self.http_requests = {}  # {classification: count}

    def record_tool_call(self, tool_name: str):
        self.tool_calls[tool_name] = self.tool_calls.get(tool_name, 0) + 1

    def record_tool_error(self, tool_name: str, category: ErrorCategory):
        self.tool_errors[tool_name] = self.tool_errors.get(tool_name, 0) + 1
        self.record_error(category)

    def record_tool_latency(self, tool_name: str, latency_ms: float):
        if tool_name not in self.tool_latencies:
            self.tool_latencies[tool_name] = []
        self.tool_latencies[tool_name].append(latency_ms)

    def record_error(self, category: ErrorCategory):
        self.error_categories[category.value] = self.error_categories.get(category.value, 0) + 1

    def record_session_event(self, event: str):
        self.session_events[event] = self.session_events.get(event, 0) + 1

    def record_http_request(self, classification: str):
        self.http_requests[classification] = self.http_requests.get(classification, 0) + 1

    def get_stats(self) -> Dict[str, Any]:
        """Get current metrics statistics"""
        stats = {
            "tool_calls": self.tool_calls,
            "tool_errors": self.tool_errors,
            "error_categories": self.error_categories,
            "session_events": self.session_events,
            "http_requests": self.http_requests,
            "tool_latencies": {}
        }

        # Calculate latency statistics
        for tool_name, latencies in self.tool_latencies.items():
            if latencies:
                stats["tool_latencies"][tool_name] = {
                    "count": len(latencies),
                    "avg_ms": sum(latencies) / len(latencies),
                    "min_ms": min(latencies),
                    "max_ms": max(latencies)
                }

        return stats


# Pydantic models for input validation
def _validate_note_name(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("Note name cannot be empty")
    return v


def _validate_note_content(v: str) -> str:
    if not v:
        raise ValueError("Note content cannot be empty")
    content_size_mb = len(v.encode('utf-8')) / (1024 * 1024)
    if content_size_mb > config.max_note_size_mb:
        raise ValueError(
            f"Note size ({content_size_mb:.2f}MB) exceeds maximum allowed size ({config.max_note_size_mb}MB)"
        )
    return v


class NoteNameInput(BaseModel):
    """Validated input for tools addressing a single note"""
    name: str = Field(..., description="The unique name of the note", min_length=1)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_note_name(v)


class CreateNoteInput(NoteNameInput):
    """Validated input schema for create_note / update_note"""
    content: str = Field(..., description="The text content of the note", min_length=1)

    @field_validator('content')
    @classmethod
    def validate_content(cls, v: str) -> str:
        return _validate_note_content(v)


class UpdateNoteInput(CreateNoteInput):
    pass


class RenameNoteInput(BaseModel):
    old_name: str = Field(..., description="Current name of the note", min_length=1)
    new_name: str = Field(..., description="New name for the note", min_length=1)

    @field_validator('old_name', 'new_name')
    @classmethod
    def validate_names(cls, v: str) -> str:
        return _validate_note_name(v)


class SetNotesFolderInput(BaseModel):
    folder_path: str = Field(..., description="Folder where notes are stored and loaded from", min_length=1)

    @field_validator('folder_path')
    @classmethod
    def validate_folder_path(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Folder path cannot be empty")
        return v.strip()


# Initialize global components
config = ServerConfig()
metrics = Metrics()

# Setup structured logging
logger = logging.getLogger("mcp_server")
logger.setLevel(getattr(logging, config.log_level, logging.INFO))

# Use stderr for logs (stdout is reserved for JSON-RPC)
handler = logging.StreamHandler(sys.stderr)
formatter = logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
handler.setFormatter(formatter)

if not logger.handlers:
    logger.addHandler(handler)


def setup_tracing() -> trace.Tracer:
    """Setup OpenTelemetry tracing"""
    if not config.enable_tracing:
        return trace.get_tracer(__name__)

    resource = Resource.create({
        "service.name": SERVER_NAME,
        "service.version": SERVER_VERSION,
        "deployment.environment": config.environment
    })

    provider = TracerProvider(resource=resource)

    # Spans go to stderr so they never interleave with stdio JSON-RPC
    processor = BatchSpanProcessor(ConsoleSpanExporter(out=sys.stderr))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)

    return trace.get_tracer(__name__)


def setup_audit_logging() -> Optional[logging.Logger]:
    """Setup audit logging for compliance"""
    if not config.enable_audit_log:
        return None

    audit_logger = logging.getLogger("mcp_server.audit")
    audit_logger.setLevel(logging.INFO)

    try:
        audit_handler = logging.FileHandler(config.audit_log_path)
        audit_formatter = logging.Formatter('%(asctime)s - %(message)s')
        audit_handler.setFormatter(audit_formatter)

        if not audit_logger.handlers:
            audit_logger.addHandler(audit_handler)

        return audit_logger
    except Exception as e:
        logger.error(f"Failed to setup audit logging: {e}")
        return None


def audit_log(action: str, details: Dict[str, Any]):
    """Log an auditable action"""
    if not audit_logger:
        return

    audit_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "details": details
    }

    audit_logger.info(json.dumps(audit_entry))


tracer = setup_tracing()
audit_logger = setup_audit_logging()


def instrumented_tool(tool_name: str) -> Callable:
    """
    Wrap a tool implementation with tracing, metrics and logging.

    Store failures (missing note, duplicate name, bad folder) are part of the
    normal conversation with the model, so they come back as an
    "Error: ..." text result. Anything else is recorded and re-raised for
    the protocol runtime to report.
    """
    def decorator(func: Callable[..., str]) -> Callable[..., str]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> str:
            start_time = time.time()

            with tracer.start_as_current_span(tool_name) as span:
                metrics.record_tool_call(tool_name)
                try:
                    result = func(*args, **kwargs)
                except NoteStorageError as e:
                    metrics.record_tool_error(tool_name, ErrorCategory.STORAGE_ERROR)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    logger.warning(f"{tool_name} failed: {e}")
                    return f"Error: {e}"
                except OSError as e:
                    metrics.record_tool_error(tool_name, ErrorCategory.IO_ERROR)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    logger.error(f"I/O error in {tool_name}", exc_info=True)
                    raise
                except Exception as e:
                    metrics.record_tool_error(tool_name, ErrorCategory.INTERNAL_ERROR)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    logger.error(f"Unexpected error in {tool_name}", exc_info=True)
                    raise

                span.set_status(Status(StatusCode.OK))
                latency_ms = (time.time() - start_time) * 1000
                metrics.record_tool_latency(tool_name, latency_ms)
                logger.debug(f"{tool_name} completed in {latency_ms:.2f}ms")
                return result

        return wrapper
    return decorator


def parse_tool_input(tool_name: str, model: type, **fields: Any) -> BaseModel:
    """
    Build a tool's input model. Rejected input counts as a call and an
    error of the tool, and is reported as a short ValueError naming each
    offending field.
    """
    try:
        return model(**fields)
    except ValidationError as e:
        metrics.record_tool_call(tool_name)
        metrics.record_tool_error(tool_name, ErrorCategory.VALIDATION_ERROR)
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
        )
        logger.warning(f"{tool_name} rejected input: {problems}")
        raise ValueError(f"Invalid input for {tool_name}: {problems}") from None


# ============================================================================
# TOOL IMPLEMENTATIONS
# ============================================================================

@instrumented_tool("get_all_notes")
def get_all_notes_impl(storage: NoteStorage) -> str:
    """List every stored note with its content and timestamps"""
    notes = storage.get_all_notes()
    trace.get_current_span().set_attribute("note_count", len(notes))

    if not notes:
        return "No notes found."

    notes_list = [{"name": name, **data} for name, data in notes.items()]
    return json.dumps(notes_list, indent=2, ensure_ascii=False)


@instrumented_tool("get_note")
def get_note_impl(storage: NoteStorage, input: NoteNameInput) -> str:
    trace.get_current_span().set_attribute("note_name", input.name)
    note = storage.get_note(input.name)
    return json.dumps(note, indent=2, ensure_ascii=False)


@instrumented_tool("create_note")
def create_note_impl(storage: NoteStorage, input: CreateNoteInput) -> str:
    """
    Create a new note. Timestamps are assigned by the store; creating a
    note whose name is already taken returns an error result and leaves
    the existing note untouched.
    """
    span = trace.get_current_span()
    span.set_attribute("note_name", input.name)
    span.set_attribute("content_size_bytes", len(input.content.encode('utf-8')))

    note = storage.create_note(input.name, input.content)

    logger.info(f"Created note '{input.name}'")
    audit_log("note_created", {"name": input.name, "folder": storage.get_notes_folder()})

    return f"Note '{input.name}' created successfully.\n{json.dumps(note, indent=2, ensure_ascii=False)}"


@instrumented_tool("update_note")
def update_note_impl(storage: NoteStorage, input: UpdateNoteInput) -> str:
    trace.get_current_span().set_attribute("note_name", input.name)

    note = storage.update_note(input.name, input.content)

    logger.info(f"Updated note '{input.name}'")
    audit_log("note_updated", {"name": input.name, "folder": storage.get_notes_folder()})

    return f"Note '{input.name}' updated successfully.\n{json.dumps(note, indent=2, ensure_ascii=False)}"


@instrumented_tool("delete_note")
def delete_note_impl(storage: NoteStorage, input: NoteNameInput) -> str:
    trace.get_current_span().set_attribute("note_name", input.name)

    deleted_note = storage.delete_note(input.name)

    logger.info(f"Deleted note '{input.name}'")
    audit_log("note_deleted", {"name": input.name, "folder": storage.get_notes_folder()})

    return f"Note '{input.name}' deleted successfully.\n{json.dumps(deleted_note, indent=2, ensure_ascii=False)}"


@instrumented_tool("rename_note")
def rename_note_impl(storage: NoteStorage, input: RenameNoteInput) -> str:
    span = trace.get_current_span()
    span.set_attribute("old_name", input.old_name)
    span.set_attribute("new_name", input.new_name)

    note = storage.rename_note(input.old_name, input.new_name)

    logger.info(f"Renamed note '{input.old_name}' to '{input.new_name}'")
    audit_log("note_renamed", {
        "old_name": input.old_name,
        "new_name": input.new_name,
        "folder": storage.get_notes_folder()
    })

    return (
        f"Note '{input.old_name}' renamed to '{input.new_name}' successfully.\n"
        f"{json.dumps(note, indent=2, ensure_ascii=False)}"
    )


@instrumented_tool("set_notes_folder")
def set_notes_folder_impl(storage: NoteStorage, input: SetNotesFolderInput) -> str:
    result = storage.set_notes_folder(input.folder_path)

    trace.get_current_span().set_attribute("notes_folder", result["folder"])
    audit_log("notes_folder_changed", {"folder": result["folder"], "notes_count": result["notes_count"]})

    return f"{result['message']}\nFound {result['notes_count']} existing notes in this location."


@instrumented_tool("get_notes_folder")
def get_notes_folder_impl(storage: NoteStorage) -> str:
    return f"Current notes folder: {storage.get_notes_folder()}"


@instrumented_tool("get_health_status")
def get_health_status_impl(storage: NoteStorage) -> str:
    """Server status, note count and a metrics snapshot"""
    return json.dumps({
        "status": "healthy",
        "server": SERVER_NAME,
        "version": SERVER_VERSION,
        "environment": config.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "notes_folder": storage.get_notes_folder(),
        "note_count": len(storage.get_all_notes()),
        "tracing_enabled": config.enable_tracing,
        "audit_log_enabled": audit_logger is not None,
        "metrics": metrics.get_stats()
    }, indent=2)


# ============================================================================
# RESOURCES
# ============================================================================

def read_all_notes_resource(storage: NoteStorage) -> str:
    """All notes keyed by name"""
    return json.dumps(storage.get_all_notes(), indent=2, ensure_ascii=False)


def list_notes_resource(storage: NoteStorage) -> str:
    """Note names with their timestamps, without content"""
    notes_list = [
        {
            "name": name,
            "created_at": data.get("created_at"),
            "modified_at": data.get("modified_at")
        }
        for name, data in storage.get_all_notes().items()
    ]
    return json.dumps(notes_list, indent=2, ensure_ascii=False)


# ============================================================================
# PROMPTS
# ============================================================================

def daily_reflection_prompt() -> str:
    return """You are helping me write my daily reflection note.

Please guide me through:

1. **Wins of the Day**
   - What went well today?
   - What am I proud of?

2. **Challenges**
   - What was difficult or frustrating?
   - What would I do differently?

3. **Learnings**
   - What did I learn today?
   - Which existing notes does this relate to?

4. **Tomorrow**
   - What are the top three priorities for tomorrow?

When we are done, save the reflection with the create_note tool using a
name like "reflection-YYYY-MM-DD"."""


def meeting_notes_prompt(meeting_type: str, attendees: str = "", agenda_items: str = "") -> str:
    attendees_text = attendees or "Not specified"
    agenda_text = agenda_items or "Not specified"

    return f"""Help me create structured notes for a {meeting_type} meeting.

**Attendees:** {attendees_text}
**Agenda:** {agenda_text}

Organize the notes with these sections:

1. **Summary** - the purpose of the meeting in two or three sentences
2. **Discussion** - key points raised for each agenda item
3. **Decisions** - what was agreed
4. **Action Items** - owner, task and due date for each follow-up
5. **Open Questions** - anything left unresolved

When the notes are complete, store them with the create_note tool using a
name like "{meeting_type}-meeting-YYYY-MM-DD"."""


def analyze_notes_prompt(storage: NoteStorage, focus_area: str = "") -> str:
    notes = storage.get_all_notes()
    focus_text = focus_area or "general themes, patterns and insights"

    if notes:
        notes_text = "\n\n".join(
            f"### {name}\n{data.get('content', '')}" for name, data in notes.items()
        )
    else:
        notes_text = "(no notes stored yet)"

    return f"""Analyze my notes with a focus on: {focus_text}

Here are all of my current notes:

{notes_text}

Please provide:
1. The main themes that appear across notes
2. Connections between notes that are not obvious
3. Gaps or topics worth writing more about
4. Concrete suggestions for organizing or consolidating notes"""


def project_planning_prompt(project_name: str, deadline: str = "", team_size: str = "") -> str:
    deadline_text = deadline or "Not specified"
    team_text = team_size or "Not specified"

    return f"""Help me plan the project "{project_name}".

**Deadline:** {deadline_text}
**Team size:** {team_text}

Work through the following:

1. **Goals** - what does success look like?
2. **Scope** - what is in and what is explicitly out?
3. **Milestones** - a timeline working back from the deadline
4. **Tasks** - a breakdown sized for the team
5. **Risks** - what could go wrong and how to mitigate it

Save the final plan with the create_note tool using the name
"project-plan-{project_name}"."""


# ============================================================================
# SERVER FACTORY
# ============================================================================

def create_notes_server(notes_folder: Optional[str] = None) -> FastMCP:
    """
    Build a FastMCP server bound to its own NoteStorage.

    The HTTP transport calls this once per client session, so every session
    gets an independent store instance loaded from the same folder.
    """
    storage = NoteStorage(notes_folder or config.notes_folder)

    mcp = FastMCP(SERVER_NAME, version=SERVER_VERSION)

    @mcp.tool()
    def get_all_notes() -> str:
        """Retrieve all stored notes"""
        return get_all_notes_impl(storage)

    @mcp.tool()
    def get_note(
        name: Annotated[str, Field(min_length=1, description="Name of the note")]
    ) -> str:
        """Get the content of a specific note by name"""
        return get_note_impl(storage, parse_tool_input("get_note", NoteNameInput, name=name))

    @mcp.tool()
    def create_note(
        name: Annotated[str, Field(min_length=1, description="Unique name for the note")],
        content: Annotated[str, Field(min_length=1, description="Text content of the note")]
    ) -> str:
        """Create a new note with name and content"""
        return create_note_impl(storage, parse_tool_input("create_note", CreateNoteInput, name=name, content=content))

    @mcp.tool()
    def update_note(
        name: Annotated[str, Field(min_length=1, description="Name of the note to update")],
        content: Annotated[str, Field(min_length=1, description="New content of the note")]
    ) -> str:
        """Update the content of an existing note"""
        return update_note_impl(storage, parse_tool_input("update_note", UpdateNoteInput, name=name, content=content))

    @mcp.tool()
    def delete_note(
        name: Annotated[str, Field(min_length=1, description="Name of the note to delete")]
    ) -> str:
        """Delete an existing note"""
        return delete_note_impl(storage, parse_tool_input("delete_note", NoteNameInput, name=name))

    @mcp.tool()
    def rename_note(
        old_name: Annotated[str, Field(min_length=1, description="Current name of the note")],
        new_name: Annotated[str, Field(min_length=1, description="New name for the note")]
    ) -> str:
        """Rename a note without changing its content"""
        return rename_note_impl(
            storage, parse_tool_input("rename_note", RenameNoteInput, old_name=old_name, new_name=new_name)
        )

    @mcp.tool()
    def set_notes_folder(
        folder_path: Annotated[str, Field(min_length=1, description="Folder path for notes")]
    ) -> str:
        """Set the folder where notes will be stored and loaded from"""
        return set_notes_folder_impl(
            storage, parse_tool_input("set_notes_folder", SetNotesFolderInput, folder_path=folder_path)
        )

    @mcp.tool()
    def get_notes_folder() -> str:
        """Get the current folder path where notes are being stored"""
        return get_notes_folder_impl(storage)

    @mcp.tool()
    def get_health_status() -> str:
        """
        Returns the current health status of the server including metrics
        and note store status. Useful for monitoring and debugging.
        """
        return get_health_status_impl(storage)

    @mcp.resource("notes://all", name="all_notes", mime_type="application/json")
    def all_notes() -> str:
        """All notes with their content and timestamps, keyed by name"""
        return read_all_notes_resource(storage)

    @mcp.resource("notes://list", name="notes_list", mime_type="application/json")
    def notes_list() -> str:
        """Names and timestamps of all notes"""
        return list_notes_resource(storage)

    @mcp.prompt()
    def daily_reflection() -> str:
        """Guided daily reflection that ends in a saved note"""
        return daily_reflection_prompt()

    @mcp.prompt()
    def create_meeting_notes(meeting_type: str, attendees: str = "", agenda_items: str = "") -> str:
        """Structured meeting notes template"""
        return meeting_notes_prompt(meeting_type, attendees, agenda_items)

    @mcp.prompt()
    def analyze_notes(focus_area: str = "") -> str:
        """Analyze all current notes for themes and connections"""
        return analyze_notes_prompt(storage, focus_area)

    @mcp.prompt()
    def project_planning(project_name: str, deadline: str = "", team_size: str = "") -> str:
        """Project planning template"""
        return project_planning_prompt(project_name, deadline, team_size)

    logger.debug(f"Notes server created for folder {storage.get_notes_folder()}")

    return mcp


def main():
    """
    Entry point for the stdio transport.
    FastMCP handles all protocol details, request routing, and response formatting.
    """
    parser = argparse.ArgumentParser(description="Notes MCP server (stdio transport)")
    parser.add_argument(
        "notes_folder",
        nargs="?",
        help="Folder holding notes_storage.json (default: $NOTES_FOLDER or ./data)"
    )
    args = parser.parse_args()

    notes_folder = config.resolve_notes_folder(args.notes_folder)

    try:
        mcp = create_notes_server(notes_folder)
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)

    logger.info(
        "Starting Notes MCP Server over stdio",
        extra={
            "version": SERVER_VERSION,
            "environment": config.environment,
            "notes_folder": notes_folder
        }
    )
    mcp.run()


if __name__ == "__main__":
    main()
