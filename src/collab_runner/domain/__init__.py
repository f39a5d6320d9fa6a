from .models import (
    Acquired,
    AcquireResult,
    HeldByOther,
    Holder,
    LockInfo,
    TaskRecord,
    TaskStage,
    TaskStatus,
    append_section,
    append_text,
    format_section,
    get_header_field,
    inbox_has_content,
    parse_task,
    set_header_field,
)

__all__ = [
    "Acquired",
    "AcquireResult",
    "HeldByOther",
    "Holder",
    "LockInfo",
    "TaskRecord",
    "TaskStage",
    "TaskStatus",
    "append_section",
    "append_text",
    "format_section",
    "get_header_field",
    "inbox_has_content",
    "parse_task",
    "set_header_field",
]
