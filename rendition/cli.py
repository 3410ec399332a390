"""
CLI interface for rendition.

Provides commands to compose and inspect registry snapshots, negotiate
representations, compute transform keys, run transforms and build
content paths.

Registry sources and compose documents are YAML or JSON files (see
rendition.registry for the layouts).
"""


import json
import time
from pathlib import Path

import click

from rendition import __version__
from rendition.utils import format_duration, print_success


def _config(ctx):
    """Loaded config, or exit with the load error."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'rendition init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


def _known_operations(config, operations):
    """--operation values, else what the configured runners implement (None: any)."""
    from rendition.runners import RunnerRegistry

    if operations:
        return set(operations)
    runners = RunnerRegistry.create_default(config)
    try:
        return runners.known_operations()
    finally:
        runners.close()


def _store_for(ctx, schema_root, operations):
    from rendition.composer import DirectorySchemaResolver
    from rendition.registry import RegistryStore

    config = ctx.obj.get("config")
    if schema_root is None and config is not None:
        schema_root = config.schema_root
    schemas = DirectorySchemaResolver(schema_root) if schema_root else None
    return RegistryStore(schemas=schemas, operations=_known_operations(config, operations))


def _compose_document_path(ctx, document):
    if document is not None:
        return Path(document)
    config = ctx.obj.get("config")
    if config is not None and config.compose_document is not None:
        return config.compose_document
    raise click.UsageError("DOCUMENT is required when no registry.compose is configured")


def _compose(ctx, document, schema_root, operations):
    from rendition.errors import CompositionError
    from rendition.registry import RegistryLoadError

    store = _store_for(ctx, schema_root, operations)
    path = _compose_document_path(ctx, document)
    try:
        return store.recompose_file(path)
    except CompositionError as e:
        click.echo(f"✗ Composition rejected: {e}", err=True)
        raise SystemExit(1)
    except RegistryLoadError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


def _load_snapshot_or_exit(path):
    from rendition.registry import RegistryLoadError, load_snapshot

    try:
        return load_snapshot(path)
    except RegistryLoadError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


def _load_data(path: Path):
    """Load a JSON or YAML file of any shape."""
    import yaml

    with open(path) as f:
        if path.suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


@click.group()
@click.version_option(version=__version__, prog_name="rendition")
@click.pass_context
def main(ctx):
    """
    rendition - Content negotiation and transform scheduling.

    Compose block-kind registries, pick representations for clients and
    run the transforms that produce missing ones.
    """
    from rendition.config import load_config
    from rendition.errors import ConfigError
    from rendition.utils import setup_logging

    ctx.ensure_object(dict)
    try:
        config = load_config()
    except ConfigError as e:
        # Commands that need the config report the error themselves
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_file=config.logging.file,
        log_level=config.logging.level,
        log_format=config.logging.format,
        console_output=config.logging.console,
    )


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize rendition configuration."""
    from rendition.config import default_config_dict, get_rendition_home
    import yaml

    home = get_rendition_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config_dict(home), sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# RENDITION_SIDECAR_URL=http://localhost:8900\n# RENDITION_LOG_LEVEL=INFO\n")

    for subdir in ("registry", "schemas", "snapshots", "jobs"):
        (home / subdir).mkdir(exist_ok=True)

    click.echo(f"Initialized rendition config at {cfg_path}")


@main.command("compose")
@click.argument("document", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--output", type=click.Path(dir_okay=False), help="Snapshot output path")
@click.option("--schema-root", type=click.Path(exists=True, file_okay=False), help="Directory schemaRefs resolve against")
@click.option("--operation", "operations", multiple=True, help="Known transform operation (repeatable)")
@click.pass_context
def compose_cmd(ctx, document, output, schema_root, operations):
    """
    Compose a registry snapshot and write it.

    DOCUMENT is a compose document ({base, extensions, enable, disable,
    overrides}); defaults to registry.compose from the config. Transform
    operations must be known to the configured runners, or to the
    --operation list when one is given. A configured sidecar accepts any
    operation.

    Examples:

        rendition compose registry/compose.yaml -o snapshot.json

        rendition compose --operation markdown.render --operation image.rasterize
    """
    from rendition.registry import write_snapshot

    snapshot = _compose(ctx, document, schema_root, operations)

    config = ctx.obj.get("config")
    if output is None and config is not None and config.snapshot_path is not None:
        output = config.snapshot_path

    if output is None:
        click.echo(snapshot.to_json(), nl=False)
        return

    path = write_snapshot(snapshot, output)
    print_success(f"Composed {len(snapshot)} kinds, version {snapshot.version}")
    click.echo(f"  Written to {path}")


@main.command("validate")
@click.argument("document", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--schema-root", type=click.Path(exists=True, file_okay=False), help="Directory schemaRefs resolve against")
@click.option("--operation", "operations", multiple=True, help="Known transform operation (repeatable)")
@click.pass_context
def validate_cmd(ctx, document, schema_root, operations):
    """Compose without writing; exit 1 if composition is rejected."""
    snapshot = _compose(ctx, document, schema_root, operations)
    print_success(f"Valid: {len(snapshot)} kinds, version {snapshot.version}")


@main.command("kinds")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
def kinds_cmd(snapshot):
    """List kinds in a snapshot artifact."""
    snap = _load_snapshot_or_exit(snapshot)
    click.echo(f"Snapshot {snap.version} ({len(snap)} kinds)")
    for entry in snap.entries:
        rules = len(entry.transform_rules)
        click.echo(f"  {entry.kind_id:<32} owner={entry.owner}  representations={len(entry.allowed_representations)}  rules={rules}")


@main.command("resolve")
@click.argument("snapshot", type=click.Path(exists=True, dir_okay=False))
@click.argument("kind")
@click.option("--accept", "accept", multiple=True, required=True, help="Accept pattern, optionally ;q=weight (repeatable, in order)")
@click.option("--reps", "reps_file", required=True, type=click.Path(exists=True, dir_okay=False), help="JSON/YAML list of representations")
@click.option("--width", type=int, help="Target width hint")
@click.option("--density", type=float, help="Pixel density hint")
@click.option("--network", help="Network class hint")
def resolve_cmd(snapshot, kind, accept, reps_file, width, density, network):
    """
    Resolve the best representation for a client and print the resolution.

    Examples:

        rendition resolve snapshot.json core:image --accept image/webp --accept image/png --reps reps.yaml --width 640
    """
    from rendition.errors import InvalidMediaTypeError, UnknownKindError
    from rendition.resolver import VariantResolver
    from rendition.schemas import CapabilityStatement, Hints, Representation

    snap = _load_snapshot_or_exit(snapshot)

    data = _load_data(Path(reps_file))
    if isinstance(data, dict):
        data = data.get("representations", [])
    try:
        available = [Representation.from_dict(item) for item in data or []]
        capabilities = CapabilityStatement.from_accept(
            accept,
            Hints(target_width=width, pixel_density=density, network_class=network),
        )
    except (InvalidMediaTypeError, KeyError, TypeError, ValueError) as e:
        click.echo(f"✗ Invalid input: {e}", err=True)
        raise SystemExit(1)

    try:
        resolution = VariantResolver(snap).resolve(kind, available, capabilities)
    except UnknownKindError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    _echo_json(resolution.to_dict())


@main.command("key")
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False))
def key_cmd(request_file):
    """Compute the TransformKey of a transform request document."""
    from rendition.schemas import TransformRequest

    try:
        request = TransformRequest.from_dict(_load_data(Path(request_file)))
    except (KeyError, TypeError, ValueError) as e:
        click.echo(f"✗ Invalid transform request: {e}", err=True)
        raise SystemExit(1)
    click.echo(request.key)


@main.command("transform")
@click.argument("request_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--timeout", type=float, help="Seconds to wait for the result")
@click.pass_context
def transform_cmd(ctx, request_file, timeout):
    """Run a transform request through the scheduler and print the result."""
    from rendition.errors import TransformError
    from rendition.job_store import FileJobStore, InMemoryJobStore
    from rendition.runners import RunnerRegistry
    from rendition.scheduler import TransformScheduler
    from rendition.schemas import TransformRequest

    config = _config(ctx)
    try:
        request = TransformRequest.from_dict(_load_data(Path(request_file)))
    except (KeyError, TypeError, ValueError) as e:
        click.echo(f"✗ Invalid transform request: {e}", err=True)
        raise SystemExit(1)

    store = FileJobStore(config.job_store_path) if config.job_store_path else InMemoryJobStore()
    runners = RunnerRegistry.create_default(config)
    started = time.monotonic()
    try:
        with TransformScheduler(runners, store=store, config=config.scheduler) as scheduler:
            representation = scheduler.transform(request, timeout=timeout)
    except TransformError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    finally:
        runners.close()

    click.echo(f"✓ {request.key} in {format_duration(time.monotonic() - started)}", err=True)
    _echo_json(representation.to_dict())


@main.command("path")
@click.argument("manifest_id")
@click.argument("block_id")
@click.argument("media_type")
@click.argument("content_hash")
def path_cmd(manifest_id, block_id, media_type, content_hash):
    """Build the content path of a variant."""
    from rendition.addressing import variant_path

    try:
        click.echo(variant_path(manifest_id, block_id, media_type, content_hash))
    except ValueError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


@main.command("parse-path")
@click.argument("path")
def parse_path_cmd(path):
    """Parse a variant content path."""
    from rendition.addressing import parse_variant_path

    try:
        address = parse_variant_path(path)
    except ValueError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    _echo_json({
        "manifestId": address.manifest_id,
        "blockId": address.block_id,
        "mediaType": str(address.media_type),
        "contentHash": address.content_hash,
    })


if __name__ == "__main__":
    main()
