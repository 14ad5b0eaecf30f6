"""
Model Resources

Stages the model into a local cache so later runs can load it directly.
The source may be a model file, a directory holding one, or a .zip archive.
"""

import asyncio
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console

from .errors import GIB, InsufficientDiskSpace, IOFailure, MissingResource

console = Console()

DISK_SPACE_REQUIRED_BYTES = 6 * GIB
MODEL_SUFFIX = ".onnx"


def default_cache_dir() -> Path:
    env = os.environ.get("SPLATGEN_CACHE_DIR")
    if env:
        return Path(env)
    return Path.home() / ".cache" / "splatgen"


class ModelResources:
    """
    Local cache for one named model.

    Args:
        source: Where to stage the model from when the cache is empty
        cache_dir: Cache root (defaults to ~/.cache/splatgen)
        model_name: Cache entry name and preferred model file stem
        disk_space_required: Free bytes required before staging
    """

    def __init__(
        self,
        source: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        model_name: str = "sharp",
        disk_space_required: int = DISK_SPACE_REQUIRED_BYTES,
    ):
        self.source = Path(source) if source is not None else None
        self.cache_root = Path(cache_dir) if cache_dir is not None else default_cache_dir()
        self.model_name = model_name
        self.disk_space_required = disk_space_required

    def cache_dir(self) -> Path:
        try:
            self.cache_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"Could not create model cache directory at: {self.cache_root}") from e
        return self.cache_root

    def cached_model_dir(self) -> Path:
        return self.cache_dir() / self.model_name

    def cached_model_path(self) -> Optional[Path]:
        model_dir = self.cache_root / self.model_name
        if not model_dir.is_dir():
            return None
        return find_model_file(model_dir, self.model_name)

    def cached_model_exists(self) -> bool:
        return self.cached_model_path() is not None

    def delete_cached_model(self) -> bool:
        """Remove the cached model. Returns True if something was deleted."""
        model_dir = self.cache_root / self.model_name
        if not model_dir.exists():
            return False
        shutil.rmtree(model_dir)
        console.print(f"[yellow]Deleted cached model: {model_dir}[/yellow]")
        return True

    def available_disk_bytes(self) -> Optional[int]:
        probe = self.cache_root
        while not probe.exists() and probe != probe.parent:
            probe = probe.parent
        try:
            return shutil.disk_usage(probe).free
        except OSError:
            return None

    def check_disk_space(self) -> None:
        available = self.available_disk_bytes()
        if available is not None and available < self.disk_space_required:
            raise InsufficientDiskSpace(self.disk_space_required, available)

    async def ensure_available(self, progress: Optional[Callable[[float], None]] = None) -> Path:
        """
        Return the local model path, staging it into the cache if needed.

        Progress runs 0 -> 0.6 (source located) -> 0.85 (copied) -> 1.
        """
        report = progress or (lambda value: None)

        cached = self.cached_model_path()
        if cached is not None:
            console.print(f"[dim]Using cached model: {cached}[/dim]")
            report(1.0)
            return cached

        report(0.0)
        self.check_disk_space()
        model_path = await asyncio.to_thread(self._stage, report)
        report(1.0)
        return model_path

    def _stage(self, report: Callable[[float], None]) -> Path:
        if self.source is None:
            raise MissingResource(self.model_name, "no model source configured")
        if not self.source.exists():
            raise MissingResource(self.model_name, str(self.source))

        console.print(f"[blue]Staging model from {self.source}...[/blue]")
        target = self.cached_model_dir()

        with tempfile.TemporaryDirectory(dir=self.cache_dir()) as tmp:
            staging = Path(tmp) / self.model_name
            if self.source.suffix == ".zip":
                if not zipfile.is_zipfile(self.source):
                    raise IOFailure(f"Not a valid zip file: {self.source}")
                with zipfile.ZipFile(self.source, "r") as zf:
                    zf.extractall(staging)
            elif self.source.is_dir():
                if find_model_file(self.source, self.model_name) is None:
                    raise MissingResource(self.model_name, str(self.source))
                shutil.copytree(self.source, staging)
            else:
                staging.mkdir(parents=True)
                # External weight files sit next to the graph as <name>.onnx.data etc.
                for path in [self.source, *sorted(self.source.parent.glob(self.source.name + ".*"))]:
                    shutil.copy2(path, staging / path.name)

            if find_model_file(staging, self.model_name) is None:
                raise MissingResource(self.model_name, str(self.source))
            report(0.6)

            if target.exists():
                shutil.rmtree(target)
            try:
                shutil.move(str(staging), str(target))
            except OSError as e:
                raise IOFailure(f"Could not move model into cache: {e}") from e
            report(0.85)

        model_path = find_model_file(target, self.model_name)
        console.print(f"[green]Model cached at {model_path}[/green]")
        return model_path


def find_model_file(directory: Path, model_name: str) -> Optional[Path]:
    """Prefer <model_name>.onnx, else the first .onnx file found."""
    preferred = directory / f"{model_name}{MODEL_SUFFIX}"
    if preferred.is_file():
        return preferred
    candidates = sorted(directory.rglob(f"*{MODEL_SUFFIX}"))
    return candidates[0] if candidates else None
