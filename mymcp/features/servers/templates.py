"""
GitHub MCP server type: template, container spec and environment.
"""

from typing import Dict, List, Optional

from mymcp.core.config import settings
from mymcp.models.server import TemplateCapability


SERVER_TYPE = "github"

GITHUB_TEMPLATE_NAME = "GitHub MCP Server"
GITHUB_TEMPLATE_VERSION = "1.0.0"
GITHUB_CONTAINER_SPEC_NAME = "mcp-github-server"

GITHUB_CPU_LIMIT = 1000  # milliCPU
GITHUB_MEMORY_LIMIT = 512  # MB
GITHUB_PORT = 8080

LABEL_SERVER_TYPE = "mcp.server.type"
LABEL_SERVER_ID = "mcp.server.id"
LABEL_USER_ID = "mcp.user.id"


def github_capabilities() -> List[TemplateCapability]:
    return [
        TemplateCapability(
            name="Repository Access",
            description="Access repository information, files, and metadata",
            is_required=True,
        ),
        TemplateCapability(
            name="Issue Management",
            description="Create, read, update issues and comments",
        ),
        TemplateCapability(
            name="Pull Request Management",
            description="Manage pull requests, reviews, and merge operations",
        ),
        TemplateCapability(
            name="File Operations",
            description="Read, write, and manage repository files and directories",
        ),
        TemplateCapability(
            name="Branch Management",
            description="Create, delete, and manage repository branches",
        ),
    ]


def github_template_values() -> dict:
    """Column values for the GitHub template row (minus ids and timestamps)."""
    return {
        "name": GITHUB_TEMPLATE_NAME,
        "version": GITHUB_TEMPLATE_VERSION,
        "description": (
            "Access GitHub repositories, issues, pull requests, and manage "
            "GitHub workflows through MCP protocol"
        ),
        "category": "Version Control",
        "documentation_url": "https://github.com/modelcontextprotocol/servers/tree/main/src/github",
        "repository_url": "https://github.com/modelcontextprotocol/servers",
        "is_official": True,
        "capabilities": [c.model_dump() for c in github_capabilities()],
        "default_configuration": {"GITHUB_TOKEN": "", "GITHUB_REPOSITORY": ""},
    }


def github_container_spec_values() -> dict:
    return {
        "name": GITHUB_CONTAINER_SPEC_NAME,
        "description": "Container running the GitHub MCP server",
        "image_name": settings.MCP_GITHUB_IMAGE,
        "image_tag": settings.MCP_GITHUB_IMAGE_TAG,
        "cpu_limit": GITHUB_CPU_LIMIT,
        "memory_limit": GITHUB_MEMORY_LIMIT,
        "port": GITHUB_PORT,
        "environment": {},
    }


def github_environment(github_token: str, repository: Optional[str] = None) -> Dict[str, str]:
    """GITHUB_TOKEN always; GITHUB_REPOSITORY only when a repository is given."""
    env = {"GITHUB_TOKEN": github_token}
    if repository and repository.strip():
        env["GITHUB_REPOSITORY"] = repository.strip()
    return env


def server_labels(server_id: str, user_id: str, server_type: str = SERVER_TYPE) -> Dict[str, str]:
    return {
        LABEL_SERVER_TYPE: server_type,
        LABEL_SERVER_ID: server_id,
        LABEL_USER_ID: user_id,
    }
