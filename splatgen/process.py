"""
Command Line Interface

splatgen generate photo.jpg --model ./sharp.onnx
"""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .backend import ComputePreference, DeviceClass, ExecutionBackend
from .device import DeviceProfile, OutputQuality, default_quality, max_output_points
from .errors import GIB, SplatGenError
from .generate import GenerationConfig, GenerationPipeline
from .ply_metadata import get_ply_info, read_metadata
from .resources import ModelResources
from .schema import resolve_schema
from .session import OnnxPredictionSession, available_providers

console = Console()
app = typer.Typer(help="Single-image Gaussian splat generator")


def _resources(model: Optional[Path], cache_dir: Optional[Path], model_name: str,
               disk_space_required: Optional[int] = None) -> ModelResources:
    kwargs = {}
    if disk_space_required is not None:
        kwargs["disk_space_required"] = disk_space_required
    return ModelResources(source=model, cache_dir=cache_dir, model_name=model_name, **kwargs)


@app.command()
def generate(
    image: Path = typer.Argument(..., help="Source image (JPEG, PNG, ...)"),
    model: Optional[Path] = typer.Option(None, help="Model source: .onnx file, directory, or .zip"),
    output_dir: Path = typer.Option(Path("./output"), help="Output directory"),
    output_name: Optional[str] = typer.Option(None, help="Output file name (default: random)"),
    disparity: float = typer.Option(1.0, help="Disparity factor passed to the model"),
    quality: Optional[OutputQuality] = typer.Option(None, help="Output quality: full, balanced, low"),
    compute: ComputePreference = typer.Option(ComputePreference.AUTO, help="Compute backend preference"),
    device_class: Optional[DeviceClass] = typer.Option(None, help="Device class (default: detect)"),
    allow_low_memory: bool = typer.Option(False, "--allow-low-memory", help="Run below the memory threshold"),
    ascii_ply: bool = typer.Option(False, "--ascii", help="Write an ASCII PLY instead of binary"),
    batch_size: int = typer.Option(2048, help="Points per write batch"),
    cache_dir: Optional[Path] = typer.Option(None, help="Model cache directory"),
    model_name: str = typer.Option("sharp", help="Model cache entry name"),
):
    """
    Generate a Gaussian splat PLY from a single image.
    """
    if not image.exists():
        console.print(f"[red]Image not found: {image}[/red]")
        raise typer.Exit(1)

    config = GenerationConfig(
        output_dir=output_dir,
        output_name=output_name,
        binary=not ascii_ply,
        batch_size=batch_size,
        disparity_factor=disparity,
        output_quality=quality,
        compute_preference=compute,
        device_class=device_class,
        allow_low_memory_override=allow_low_memory,
    )
    resources = _resources(model, cache_dir, model_name, config.disk_space_required)
    pipeline = GenerationPipeline(resources, config)

    console.print(Panel.fit(
        "[bold blue]Splat Generation[/bold blue]\n"
        f"Image: {image}\n"
        f"Device: {pipeline.device.describe()}\n"
        f"Output: {output_dir}",
        border_style="blue"
    ))

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Generating...", total=1.0)

        def on_progress(value: float):
            progress.update(task, completed=value)

        try:
            result = asyncio.run(pipeline.generate(image.read_bytes(), progress=on_progress))
        except SplatGenError as e:
            console.print(f"[bold red]Generation failed:[/bold red] {e}")
            raise typer.Exit(1)
        finally:
            pipeline.close()

    stages = "\n".join(
        f"  {name}: {info['duration_seconds']:.1f}s" for name, info in pipeline.stats.stages.items()
    )
    console.print(Panel.fit(
        f"[bold green]Generation Complete![/bold green]\n\n"
        f"Points: {result.point_count:,}\n"
        f"Total time: {pipeline.stats.total_duration:.1f}s\n"
        f"{stages}\n"
        f"Output: {result.path}",
        border_style="green"
    ))


@app.command("inspect-model")
def inspect_model(
    model_path: Path = typer.Argument(..., help="Path to .onnx model"),
    backend: ExecutionBackend = typer.Option(ExecutionBackend.CPU_ONLY, help="Execution backend"),
):
    """Show a model's declared inputs/outputs and how they resolve."""
    if not model_path.exists():
        console.print(f"[red]Model not found: {model_path}[/red]")
        raise typer.Exit(1)

    console.print(f"[dim]Installed providers: {', '.join(available_providers())}[/dim]")
    try:
        session = OnnxPredictionSession(model_path, backend)
    except Exception as e:
        console.print(f"[bold red]Could not load model:[/bold red] {e}")
        raise typer.Exit(1)

    table = Table(title=model_path.name)
    table.add_column("Direction")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Shape")
    table.add_column("DType")
    for direction, descriptors in (("input", session.input_descriptors), ("output", session.output_descriptors)):
        for desc in descriptors:
            table.add_row(direction, desc.name, desc.kind.value, str(desc.shape), desc.dtype or "-")
    console.print(table)

    try:
        schema = resolve_schema(session)
    except SplatGenError as e:
        console.print(f"[bold red]Schema resolution failed:[/bold red] {e}")
        raise typer.Exit(1)

    console.print(f"\n[bold]Resolved roles[/bold] ({'heuristic' if schema.used_heuristics else 'canonical'})")
    console.print(f"  [blue]image[/blue]: {schema.image_input.describe()}")
    disparity = schema.disparity_input.describe() if schema.disparity_input else "none"
    console.print(f"  [blue]disparity[/blue]: {disparity}")
    for role, name in schema.output_names().items():
        console.print(f"  [blue]{role}[/blue]: {name}")


@app.command()
def info(
    ply_path: Path = typer.Argument(..., help="Path to splat PLY"),
):
    """Show point count, properties and camera metadata of a splat PLY."""
    try:
        ply_info = get_ply_info(ply_path)
    except SplatGenError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]PLY Info: {ply_path.name}[/bold]")
    console.print(f"  Format: {ply_info['format']}")
    console.print(f"  Points: {ply_info['point_count']:,}")
    console.print(f"  Size: {ply_info['file_size_mb']:.2f} MB")
    console.print(f"  Elements: {', '.join(ply_info['elements'])}")
    console.print(f"  Properties ({ply_info['property_count']}): "
                  f"{', '.join(p['name'] for p in ply_info['properties'])}")

    if ply_info["format"] != "binary_little_endian":
        return
    try:
        metadata = read_metadata(ply_path)
    except SplatGenError as e:
        console.print(f"[yellow]Could not read metadata: {e}[/yellow]")
        return

    camera = metadata.camera
    if camera.image_size is not None:
        console.print(f"  Image size: {camera.image_size[0]}x{camera.image_size[1]}")
    if camera.intrinsic is not None:
        console.print(f"  Intrinsic:\n{camera.intrinsic}")
    if camera.extrinsic is not None:
        console.print(f"  Extrinsic:\n{camera.extrinsic}")
    if metadata.sampled_mean_z is not None:
        console.print(f"  Sampled mean Z: {metadata.sampled_mean_z:.4f}")
    console.print(f"  Forward axis: {metadata.forward_axis_hint.value}")


@app.command("cache-status")
def cache_status(
    cache_dir: Optional[Path] = typer.Option(None, help="Model cache directory"),
    model_name: str = typer.Option("sharp", help="Model cache entry name"),
):
    """Show whether the model is cached and what this device can run."""
    resources = _resources(None, cache_dir, model_name)
    cached = resources.cached_model_path()
    profile = DeviceProfile.detect()

    console.print(f"[bold]Cache:[/bold] {resources.cache_root}")
    if cached is not None:
        console.print(f"  [green]Model cached:[/green] {cached}")
    else:
        console.print("  [yellow]Model not cached[/yellow]")

    free = resources.available_disk_bytes()
    if free is not None:
        console.print(f"  Free disk: {free / GIB:.1f} GB")

    quality = default_quality(profile)
    cap = max_output_points(quality, profile)
    console.print(f"[bold]Device:[/bold] {profile.describe()}")
    console.print(f"  Default quality: {quality.value} "
                  f"({'no point cap' if cap is None else f'max {cap:,} points'})")


@app.command("clear-cache")
def clear_cache(
    cache_dir: Optional[Path] = typer.Option(None, help="Model cache directory"),
    model_name: str = typer.Option("sharp", help="Model cache entry name"),
):
    """Delete the cached model."""
    resources = _resources(None, cache_dir, model_name)
    try:
        deleted = resources.delete_cached_model()
    except OSError as e:
        console.print(f"[red]Could not delete cached model: {e}[/red]")
        raise typer.Exit(1)
    if not deleted:
        console.print("[dim]Nothing to delete[/dim]")


if __name__ == "__main__":
    app()
