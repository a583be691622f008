"""
Agent workspaces.

Each agent owns a directory of markdown files (persona, memory, preferences)
that the gateway mounts. Workspaces are seeded from a templates directory when
one is configured; any template that is missing gets a minimal default.
"""

import shutil
from pathlib import Path

import structlog

from .config import Settings, get_settings

logger = structlog.get_logger(__name__)

TEMPLATE_FILES = (
    "SOUL.md",
    "AGENTS.md",
    "USER.md",
    "IDENTITY.md",
    "TOOLS.md",
    "MEMORY.md",
    "HEARTBEAT.md",
)

DEFAULT_CONTENTS = {
    "SOUL.md": "# Your AI Assistant\n\nBe helpful, friendly and genuine.\n",
    "AGENTS.md": "# Personal AI Assistant\n\nYou are a helpful AI assistant.\n",
    "USER.md": "# User\n\n_(Learn about your human as you chat)_\n",
    "IDENTITY.md": "# Identity\n\n- **Name:** Assistant\n",
    "TOOLS.md": "# Preferences\n\n_(User preferences go here)_\n",
    "MEMORY.md": "# Memory\n\n_(Important things to remember)_\n",
}


class WorkspaceManager:
    """Creates and removes agent workspace directories on the local mount."""

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self.root = Path(settings.workspaces_dir)
        self.gateway_root = Path(settings.gateway_workspaces_dir)
        self.templates_dir = (
            Path(settings.templates_dir) if settings.templates_dir else None
        )

    def local_path(self, agent_id: str) -> Path:
        return self.root / agent_id

    def gateway_path(self, agent_id: str) -> str:
        """Workspace path as seen from inside the gateway container."""
        return str(self.gateway_root / agent_id)

    def exists(self, agent_id: str) -> bool:
        return self.local_path(agent_id).is_dir()

    def create(self, agent_id: str) -> Path:
        """Create (or top up) a workspace. Existing files are left untouched."""
        workspace = self.local_path(agent_id)
        (workspace / "memory").mkdir(parents=True, exist_ok=True)

        for name in TEMPLATE_FILES:
            dest = workspace / name
            if dest.exists():
                continue
            template = self.templates_dir / name if self.templates_dir else None
            if template is not None and template.is_file():
                shutil.copyfile(template, dest)
            else:
                dest.write_text(DEFAULT_CONTENTS.get(name, f"# {name}\n"))

        logger.info("workspace_created", agent_id=agent_id, path=str(workspace))
        return workspace

    def remove(self, agent_id: str) -> None:
        workspace = self.local_path(agent_id)
        if workspace.exists():
            shutil.rmtree(workspace, ignore_errors=True)
            logger.info("workspace_removed", agent_id=agent_id)
