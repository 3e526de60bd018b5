from workloop.state.status import (
    Progress,
    StatusSnapshot,
    initialize_status,
    load_status,
    progress_summary,
    read_status,
    validate_status,
    write_status,
)
from workloop.state.workspace import (
    InvalidMetadataError,
    VerificationRecord,
    Workspace,
    WorkspaceError,
    WorkspaceExistsError,
    WorkspaceMetadata,
    WorkspaceNotFoundError,
    list_workspaces,
)

__all__ = [
    "InvalidMetadataError",
    "Progress",
    "StatusSnapshot",
    "VerificationRecord",
    "Workspace",
    "WorkspaceError",
    "WorkspaceExistsError",
    "WorkspaceMetadata",
    "WorkspaceNotFoundError",
    "initialize_status",
    "list_workspaces",
    "load_status",
    "progress_summary",
    "read_status",
    "validate_status",
    "write_status",
]
