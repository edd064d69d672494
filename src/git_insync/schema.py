"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

_COMPARISON_SCHEMA = {
    "type": "object",
    "properties": {
        "ok": {"type": "boolean"},
        "directory": {"type": "string"},
        "branch_name": {"type": "string"},
        "status": {
            "type": "string",
            "description": "OK, PUSH REQUIRED, MERGE REQUIRED, or a fetch failure message",
        },
        "ahead_by": {"type": "integer"},
        "behind_by": {"type": "integer"},
    },
}


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    return {
        "name": "git-insync",
        "version": __version__,
        "description": "Check that every Git repository directly under a directory is in sync with its origin remote. Each repository is validated (origin remote present, origin URL on the approved host, current branch tracking origin, no uncommitted changes), fetched with the configured credentials, and reported as OK, PUSH REQUIRED or MERGE REQUIRED. Read-only: never merges, pushes or checks out.",
        "usage": "git-insync check [path] [options]",
        "tools": [
            {
                "name": "check",
                "description": "Fetch origin for every repository under the path and report ahead/behind counts. Repositories that fail a precondition or whose fetch fails are still reported, with the reason as their status.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "Root path whose sub-directories are checked (default: current directory)",
                            "default": ".",
                        },
                        "config": {
                            "type": "string",
                            "description": "Configuration file (overrides auto-resolution). Auto-resolved from: $GIT_INSYNC_CONFIG env var → <path>/.gitinsync",
                        },
                        "json": {
                            "type": "boolean",
                            "description": "Output as JSON for machine parsing",
                            "default": False,
                        },
                        "markdown": {
                            "type": "boolean",
                            "description": "Draw the table with markdown borders",
                            "default": False,
                        },
                    },
                    "required": [],
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "repositories": {
                            "type": "array",
                            "items": {
                                "oneOf": [
                                    _COMPARISON_SCHEMA,
                                    {
                                        "type": "object",
                                        "properties": {
                                            "ok": {"type": "boolean"},
                                            "directory": {"type": "string"},
                                            "branch_name": {"type": ["string", "null"]},
                                            "message": {"type": "string"},
                                            "comparison": {
                                                "oneOf": [_COMPARISON_SCHEMA, {"type": "null"}]
                                            },
                                        },
                                    },
                                ],
                            },
                        },
                        "summary": {
                            "type": "object",
                            "properties": {
                                "total": {"type": "integer"},
                                "ok": {"type": "integer"},
                                "need_push": {"type": "integer"},
                                "need_merge": {"type": "integer"},
                                "errors": {"type": "integer"},
                            },
                        },
                    },
                },
                "examples": [
                    {
                        "description": "Check all repos in ~/src",
                        "command": "git-insync check ~/src --json",
                    },
                    {
                        "description": "Use a shared configuration file",
                        "command": "git-insync check ~/src --config ~/.config/gitinsync --json",
                    },
                ],
            },
        ],
        "configFileFormat": {
            "description": "One 'key: value' setting per line",
            "keys": {
                "username": "User name sent when origin asks for credentials (required)",
                "password": "Password or token sent when origin asks for credentials (required)",
                "remotemustmatch": "Substring the origin URL must contain (required)",
                "ignores": "Directory names to skip, separated by | (optional)",
            },
            "example": "username: jdoe\npassword: s3cret\nremotemustmatch: git.example.com\nignores: scratch|vendor",
        },
        "notes": [
            "Repositories are processed one at a time; each yields exactly one row",
            "Only the origin remote is considered",
            "Config errors are reported before any repository is processed (exit code 1)",
        ],
    }
