"""Prompt construction for agent task attempts."""

from __future__ import annotations

from agent_controller.controller.models import TaskView

SYSTEM_PROMPT = """\
You are an autonomous software engineering agent working through a task backlog.

Do the work itself, not a description of it.

For coding tasks:
- Read the relevant files first
- Make the necessary code changes
- Run tests if available
- Commit your changes locally

For research tasks:
- Search and read the codebase
- Report clear findings

For complex tasks:
- Break the work into steps
- Execute each step
- Report progress as you go
"""

_INSTRUCTIONS = """\
## Instructions:
Complete this task. You may:
- Read and write files
- Run commands
- Make local git commits (ask before pushing)

If this is a coding task, implement the changes. If you need more information,
explain what you need. When you are done, summarize what you accomplished."""


def build_task_prompt(task: TaskView) -> str:
    """Render the user message sent to the agent for `task`."""

    sections = [f"## Task: {task.title}"]
    if task.description:
        sections.append(f"## Description:\n{task.description}")
    if task.last_error:
        sections.append(f"## Previous attempt failed with:\n{task.last_error}")
    sections.append(_INSTRUCTIONS)
    return "\n\n".join(sections)
