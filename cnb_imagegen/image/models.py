"""Pydantic models for container engine image inspection data.

Field aliases follow the Docker Engine API image inspect payload.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImageConfig(BaseModel):
    """Runtime configuration embedded in an image.

    Unknown keys (Cmd, Entrypoint, WorkingDir, ...) are preserved so the
    configuration can be written back unchanged into a new image archive.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    env: list[str] = Field(default_factory=list, alias="Env")
    labels: dict[str, str] = Field(default_factory=dict, alias="Labels")
    user: str | None = Field(default=None, alias="User")

    @field_validator("env", mode="before")
    @classmethod
    def validate_env(cls, v: Any) -> Any:
        """Treat a null environment as empty."""
        return [] if v is None else v

    @field_validator("labels", mode="before")
    @classmethod
    def validate_labels(cls, v: Any) -> Any:
        """Treat null labels as empty."""
        return {} if v is None else v

    def env_dict(self) -> dict[str, str]:
        """Return the environment as a mapping (later entries win)."""
        result: dict[str, str] = {}
        for entry in self.env:
            key, _, value = entry.partition("=")
            result[key] = value
        return result

    def to_dict(self) -> dict[str, Any]:
        """Serialize using engine field names, including preserved extras."""
        return self.model_dump(by_alias=True, exclude_none=True)


class RootFs(BaseModel):
    """Root filesystem description of an image."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(default="layers", alias="Type")
    layers: list[str] = Field(default_factory=list, alias="Layers")

    @field_validator("layers", mode="before")
    @classmethod
    def validate_layers(cls, v: Any) -> Any:
        """Treat null layers as empty."""
        return [] if v is None else v


class Image(BaseModel):
    """An image as reported by the container engine.

    Attributes:
        id: Image ID (config digest).
        repo_digests: Registry digests the image is known under.
        created: Creation timestamp string.
        os: Operating system.
        architecture: CPU architecture.
        variant: Optional architecture variant.
        config: Runtime configuration (env, labels, user, ...).
        rootfs: Layer diff IDs.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="Id")
    repo_digests: list[str] = Field(default_factory=list, alias="RepoDigests")
    created: str | None = Field(default=None, alias="Created")
    os: str = Field(default="linux", alias="Os")
    architecture: str = Field(default="amd64", alias="Architecture")
    variant: str | None = Field(default=None, alias="Variant")
    config: ImageConfig = Field(default_factory=ImageConfig, alias="Config")
    rootfs: RootFs = Field(default_factory=RootFs, alias="RootFS")

    @field_validator("repo_digests", mode="before")
    @classmethod
    def validate_repo_digests(cls, v: Any) -> Any:
        """Treat null digests as empty."""
        return [] if v is None else v

    @property
    def layers(self) -> list[str]:
        """Layer diff IDs, bottom-most first."""
        return list(self.rootfs.layers)

    @property
    def labels(self) -> dict[str, str]:
        """Image labels."""
        return self.config.labels

    @property
    def env(self) -> dict[str, str]:
        """Image environment as a mapping."""
        return self.config.env_dict()


__all__ = ["Image", "ImageConfig", "RootFs"]
