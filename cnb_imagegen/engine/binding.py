"""Volume bindings between the host and lifecycle containers."""

from __future__ import annotations

from dataclasses import dataclass

# Container paths owned by the buildpack lifecycle; binding over them may
# leak host content into the produced image
SENSITIVE_CONTAINER_PATHS = (
    "/cnb",
    "/layers",
    "/workspace",
    "c:\\cnb",
    "c:\\layers",
    "c:\\workspace",
)


@dataclass(frozen=True)
class Binding:
    """A ``source:destination[:options]`` volume binding.

    Attributes:
        value: Binding in engine ``Binds`` syntax.
    """

    value: str

    @classmethod
    def of(cls, value: str) -> Binding:
        """Parse a binding string.

        Raises:
            ValueError: If the value has no container path.
        """
        if not value or not value.strip():
            raise ValueError("Binding must not be empty")
        binding = cls(value)
        parts = binding._split()
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(
                f"Binding '{value}' must be in the form 'source:destination[:options]'"
            )
        return binding

    @classmethod
    def from_paths(cls, source: str, destination: str, read_only: bool = False) -> Binding:
        """Create a binding from a host source and container destination."""
        value = f"{source}:{destination}"
        if read_only:
            value += ":ro"
        return cls(value)

    @property
    def container_path(self) -> str:
        """The container side of the binding."""
        parts = self._split()
        return parts[1] if len(parts) > 1 else ""

    def uses_sensitive_container_path(self) -> bool:
        """Whether the container path overlaps a lifecycle-owned directory."""
        path = self.container_path.rstrip("/\\").lower()
        for sensitive in SENSITIVE_CONTAINER_PATHS:
            if path == sensitive or path.startswith(sensitive + "/") or path.startswith(
                sensitive + "\\"
            ):
                return True
        return False

    def _split(self) -> list[str]:
        # Windows drive letters ("c:\src:c:\workspace") contain a colon of their own
        parts: list[str] = []
        for part in self.value.split(":"):
            previous = parts[-1] if parts else ""
            drive_separators = "\\/" if len(parts) == 1 else "\\"
            drive = len(previous) == 1 and previous.isalpha()
            if drive and part[:1] and part[0] in drive_separators:
                parts[-1] = f"{previous}:{part}"
            else:
                parts.append(part)
        return parts

    def __str__(self) -> str:
        return self.value


__all__ = ["SENSITIVE_CONTAINER_PATHS", "Binding"]
