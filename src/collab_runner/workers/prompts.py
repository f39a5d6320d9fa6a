"""Build the text prompts passed to the agent command for each worker step."""

from __future__ import annotations


def build_executor_prompt(guide: str, task_content: str) -> str:
    return f"""You are an Executor agent working on a specific task.

{guide}

## Current Task
{task_content}

## Instructions
1. Read and understand the task requirements
2. Implement the required changes
3. Test your changes if possible
4. When done, create a summary of what you did

IMPORTANT: Work only on this specific task. Do not modify unrelated files.
Start working on the task now."""


def build_inbox_prompt(guide: str, inbox_content: str, queue_location: str) -> str:
    """Ask the agent to turn inbox requirements into queued task files."""
    return f"""You are a Supervisor agent responsible for task planning and distribution.

{guide}

## New Requirements from Inbox
{inbox_content}

## Instructions
1. Analyze the requirements
2. Break them down into specific, actionable tasks
3. Create task files in the queue directory

For each task, create a file in {queue_location} with this format:
- Filename: task_<timestamp>_<short-description>.md
- Content:
```markdown
---
id: <unique-id>
status: PENDING
priority: normal
created: <ISO-timestamp>
source: inbox
---
## Task Description
<clear description of what needs to be done>

## Acceptance Criteria
<specific criteria for task completion>

## Notes
<any additional context or constraints>
```

Create the task files now. Each task should be independently executable."""


def build_review_prompt(guide: str, task_content: str) -> str:
    return f"""You are a Supervisor agent reviewing a completed task.

{guide}

## Task to Review
{task_content}

## Instructions
1. Review the task completion status
2. Check if the acceptance criteria were met
3. Verify the work was done correctly

Based on your review, you must decide:
- APPROVE: Task is complete and meets criteria
- REJECT: Task needs more work

Output your decision as a single word on the last line: APPROVE or REJECT

If rejecting, explain what needs to be fixed before the decision."""
