"""API versioning utilities."""

from enum import Enum

from fastapi import APIRouter


class APIVersion(str, Enum):
    """Supported API versions."""

    V1 = "v1"


class VersionedAPIRouter(APIRouter):
    """API Router with version support."""

    def __init__(self, version: APIVersion, *args, **kwargs):
        # Add version prefix to all routes
        prefix = kwargs.get("prefix", "")
        kwargs["prefix"] = f"/{version.value}{prefix}"

        tags = kwargs.get("tags", [])
        if tags:
            kwargs["tags"] = [f"{version.value.upper()} - {tag}" for tag in tags]
        else:
            kwargs["tags"] = [version.value.upper()]

        super().__init__(*args, **kwargs)
        self.version = version
