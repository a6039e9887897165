"""spotsh CLI -- powered by Typer."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from spotsh import __version__
from spotsh.ami import ImageResolver, image_description
from spotsh.clients import ALL_REGIONS, new_client, resolve_region
from spotsh.ec2 import DEFAULT_INSTANCE_TYPES, DEFAULT_MAX_SPOT_PRICE, DEFAULT_ROOT_VOLUME_GIB
from spotsh.exceptions import ConsistencyError, ValidationError
from spotsh.keys import KeyManager
from spotsh.network import NetworkResolver
from spotsh.prefs import Preferences
from spotsh.pricing import find_cheapest
from spotsh.session import Session
from spotsh.types import InstanceRecord, OperatingSystem

app = typer.Typer(
    name="spotsh",
    help="Launch and ssh into a cheap, disposable AWS spot instance.",
    add_completion=False,
    invoke_without_command=True,
)
vpn_app = typer.Typer(help="Route traffic through a WireGuard VPN on the spot instance.")
app.add_typer(vpn_app, name="vpn")
console = Console()

# internal consistency failures exit with EX_SOFTWARE
EXIT_CONSISTENCY = 70

_REGION_HELP = "AWS region, or 'all' for every enabled region (default: AWS_REGION)"
_INSTANCE_HELP = "Instance to act on when more than one is running"


@contextmanager
def _handle_errors() -> Iterator[None]:
    try:
        yield
    except typer.Exit:
        raise
    except ConsistencyError as e:
        console.print(f"[red bold]Internal error:[/red bold] {e}")
        raise typer.Exit(code=EXIT_CONSISTENCY)
    except Exception as e:
        console.print(f"[red bold]Error:[/red bold] {e}")
        raise typer.Exit(code=1)


def _root_option(ctx: typer.Context, name: str, value: Optional[str]) -> Optional[str]:
    """*value*, falling back to the same option given before the subcommand."""
    if value is not None:
        return value
    return (ctx.find_root().obj or {}).get(name)


def _single_region(region: Optional[str]) -> str:
    region = resolve_region(region)
    if region == ALL_REGIONS:
        raise ValidationError("This command needs a single region; please pass --region")
    return region


def _show_instance(record: InstanceRecord) -> None:
    console.print(f"Instance: [bold]{record.instance_id}[/bold] ({record.instance_type})")
    console.print(f"  region:   {record.region} ({record.az_name or 'unknown az'})")
    console.print(f"  address:  {record.public_ip or '[yellow]not yet assigned[/yellow]'}")
    console.print(f"  user:     {record.user}")
    console.print(f"  os:       {record.os or 'custom image'}")
    if record.current_price:
        console.print(f"  price:    [green]${record.current_price:.4f}/hr[/green]")
    if record.local_key_file:
        console.print(f"  key file: {record.local_key_file}")


@app.callback()
def main(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help=_INSTANCE_HELP),
) -> None:
    """With no command, ssh into the running instance, launching one first if needed."""
    ctx.obj = {"region": region, "instance_id": instance_id}
    if ctx.invoked_subcommand is not None:
        return
    with _handle_errors():
        Session(region=region).ssh(instance_id=instance_id, allow_launch=True)


@app.command()
def launch(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    os_name: Optional[str] = typer.Option(None, "--os", help="Operating system, e.g. amzn2023, ubuntu24.04"),
    image_id: Optional[str] = typer.Option(None, "--image-id", help="Launch this image instead of a stock OS image"),
    image_name: Optional[str] = typer.Option(None, "--image-name", help="Launch one of your own images by name"),
    user: Optional[str] = typer.Option(None, "--user", help="Login user (required with --image-id/--image-name)"),
    instance_types: Optional[list[str]] = typer.Option(None, "--instance-type", "-t", help="Allowed instance type (repeatable)"),
    max_price: Optional[str] = typer.Option(None, "--max-price", help="Maximum spot price in USD/hour"),
    key_name: Optional[str] = typer.Option(None, "--key", help="EC2 key pair name"),
    sg_id: Optional[str] = typer.Option(None, "--sg", help="Security group id"),
    role: Optional[str] = typer.Option(None, "--role", help="IAM instance profile to attach"),
    init_cmd: Optional[str] = typer.Option(None, "--init-cmd", help="Command run at first boot"),
    root_volume_size: Optional[int] = typer.Option(None, "--root-size", min=1, help="Root volume size in GiB"),
) -> None:
    """Launch a new spot instance."""
    region = _root_option(ctx, "region", region)
    with _handle_errors():
        session = Session(region=region)
        spec = session.prefs.to_launch_spec()
        if image_id or image_name:
            spec.os = OperatingSystem.NONE
        overrides = {
            "image_id": image_id,
            "image_name": image_name,
            "user": user,
            "instance_types": instance_types,
            "max_spot_price": max_price,
            "key_name": key_name,
            "security_group_id": sg_id,
            "role_name": role,
            "init_cmd": init_cmd,
            "root_volume_size": root_volume_size,
        }
        if os_name is not None:
            overrides["os"] = OperatingSystem.from_string(os_name)
        spec = replace(spec, **{k: v for k, v in overrides.items() if v})
        record = session.launch(spec)
        _show_instance(record)


@app.command("ls")
def list_instances(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
) -> None:
    """List running spotsh instances."""
    region = _root_option(ctx, "region", region)
    with _handle_errors():
        records = Session(region=region).instances()

    if not records:
        console.print("[yellow]No running spotsh instances.[/yellow]")
        return

    table = Table(title="spotsh instances", show_header=True)
    table.add_column("Instance", style="cyan")
    table.add_column("Region")
    table.add_column("AZ")
    table.add_column("Type")
    table.add_column("Public IP")
    table.add_column("User")
    table.add_column("OS")
    table.add_column("$/hr", justify="right", style="green")
    table.add_column("Key file", style="dim")
    for rec in records:
        table.add_row(
            rec.instance_id,
            rec.region,
            rec.az_name,
            rec.instance_type,
            rec.public_ip or "-",
            rec.user,
            str(rec.os) or "-",
            f"${rec.current_price:.4f}",
            rec.local_key_file or "[red]missing[/red]",
        )
    console.print(table)


@app.command()
def prices(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_types: Optional[list[str]] = typer.Option(None, "--instance-type", "-t", help="Instance type (repeatable)"),
) -> None:
    """Show current spot prices per availability zone."""
    region = _root_option(ctx, "region", region)
    with _handle_errors():
        prefs = Preferences.load()
        types = instance_types or prefs.instance_types or DEFAULT_INSTANCE_TYPES
        table_data, best = find_cheapest(types, resolve_region(region), new_client)

    rows = table_data.rows()
    if not rows:
        console.print("[yellow]No pricing data available.[/yellow]")
        return

    table = Table(title="Spot Prices", show_header=True)
    table.add_column("Instance", style="cyan")
    table.add_column("Region")
    table.add_column("AZ")
    table.add_column("$/hr", justify="right", style="green")
    table.add_column("", style="bold yellow")
    for itype, reg, az, price in rows:
        marker = "<-- cheapest" if best is not None and (itype, reg, az) == best[:3] else ""
        table.add_row(itype, reg, az, f"${price:.4f}", marker)
    console.print(table)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def ssh(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help=_INSTANCE_HELP),
    launch_if_needed: bool = typer.Option(False, "--launch", help="Launch an instance if none is running"),
) -> None:
    """Open an ssh session (extra arguments are run as a remote command)."""
    region = _root_option(ctx, "region", region)
    instance_id = _root_option(ctx, "instance_id", instance_id)
    with _handle_errors():
        Session(region=region).ssh(
            instance_id=instance_id,
            allow_launch=launch_if_needed,
            command=list(ctx.args) or None,
        )


@app.command()
def scp(
    ctx: typer.Context,
    paths: list[str] = typer.Argument(..., help="Sources then destination; prefix remote paths with ':'"),
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help=_INSTANCE_HELP),
) -> None:
    """Copy files to or from the instance."""
    region = _root_option(ctx, "region", region)
    instance_id = _root_option(ctx, "instance_id", instance_id)
    with _handle_errors():
        Session(region=region).scp(paths, instance_id=instance_id)


@app.command()
def terminate(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help=_INSTANCE_HELP),
) -> None:
    """Terminate the running spot instance."""
    region = _root_option(ctx, "region", region)
    instance_id = _root_option(ctx, "instance_id", instance_id)
    with _handle_errors():
        Session(region=region).terminate(instance_id=instance_id)


@app.command()
def image(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help=_INSTANCE_HELP),
    name: str = typer.Option("", "--name", help="Image name (default: spotsh-<timestamp>)"),
    description: str = typer.Option("", "--description", help="Image description"),
) -> None:
    """Create an image from the running instance."""
    region = _root_option(ctx, "region", region)
    instance_id = _root_option(ctx, "instance_id", instance_id)
    with _handle_errors():
        image_id = Session(region=region).create_image(instance_id, name, description)
    console.print(f"[green bold]Image requested: {image_id}[/green bold]")


@app.command()
def images(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
) -> None:
    """List images owned by this account."""
    region = _root_option(ctx, "region", region)
    with _handle_errors():
        reg = _single_region(region)
        own = ImageResolver(new_client("ec2", reg), new_client("ssm", reg)).list_own_images()

    table = Table(title=f"Images ({reg})", show_header=True)
    table.add_column("Image", style="cyan")
    table.add_column("Name")
    table.add_column("Created")
    table.add_column("State")
    for img in own:
        table.add_row(img["id"], img["name"], img["created"], img["state"])
    console.print(table)


@app.command()
def keys(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
) -> None:
    """List key pairs and their local private key files."""
    region = _root_option(ctx, "region", region)
    with _handle_errors():
        reg = _single_region(region)
        records = KeyManager(new_client("ec2", reg), reg).lookup_keys()

    table = Table(title=f"Key pairs ({reg})", show_header=True)
    table.add_column("Key pair", style="cyan")
    table.add_column("Name")
    table.add_column("Fingerprint", style="dim")
    table.add_column("Local key file")
    for rec in records.values():
        table.add_row(rec.key_id, rec.name, rec.fingerprint, rec.local_key_file or "-")
    console.print(table)


@app.command()
def sgs(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
) -> None:
    """List VPCs and their security groups."""
    region = _root_option(ctx, "region", region)
    with _handle_errors():
        reg = _single_region(region)
        vpcs = NetworkResolver(new_client("ec2", reg)).lookup_vpc_security_groups()

    table = Table(title=f"Security groups ({reg})", show_header=True)
    table.add_column("VPC", style="cyan")
    table.add_column("Security group")
    table.add_column("Name")
    for vpc_id, vpc in vpcs.items():
        label = f"{vpc_id} (default)" if vpc["default"] else vpc_id
        for sg_id, sg_name in vpc["groups"].items():
            table.add_row(label, sg_id, sg_name)
    console.print(table)


@app.command()
def config() -> None:
    """Interactively set launch defaults."""
    with _handle_errors():
        prefs = Preferences.load()
        choices = ", ".join(str(o) for o in OperatingSystem.launchable())
        os_value = typer.prompt(
            f"Operating system ({choices})",
            default=prefs.os or str(OperatingSystem.AMZN2023),
        )
        if not OperatingSystem.from_string(os_value).is_launchable:
            raise ValidationError(f"Unknown operating system {os_value!r}; choose one of: {choices}")
        types_value = typer.prompt(
            "Instance types (comma separated)",
            default=",".join(prefs.instance_types or DEFAULT_INSTANCE_TYPES),
        )
        prefs.os = os_value
        prefs.instance_types = [t.strip() for t in types_value.split(",") if t.strip()]
        prefs.max_spot_price = typer.prompt(
            "Maximum spot price (USD/hour)",
            default=prefs.max_spot_price or DEFAULT_MAX_SPOT_PRICE,
        )
        prefs.security_group_id = typer.prompt(
            "Security group id (blank for the default VPC's default group)",
            default=prefs.security_group_id,
        )
        prefs.key_name = typer.prompt(
            "Key pair name (blank for spotsh.<region>)", default=prefs.key_name
        )
        prefs.role_name = typer.prompt("IAM role to attach (blank for none)", default=prefs.role_name)
        prefs.init_cmd = typer.prompt("Command to run at first boot (blank for none)", default=prefs.init_cmd)
        prefs.root_volume_size = typer.prompt(
            "Root volume size (GiB)",
            default=prefs.root_volume_size or DEFAULT_ROOT_VOLUME_GIB,
            type=int,
        )
        path = prefs.save()
    console.print(
        f"[green]Saved preferences to {path}[/green] "
        f"({image_description(prefs.operating_system)})"
    )


@vpn_app.command("start")
def vpn_start(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help=_INSTANCE_HELP),
) -> None:
    """Start the VPN through the running instance."""
    region = _root_option(ctx, "region", region)
    instance_id = _root_option(ctx, "instance_id", instance_id)
    with _handle_errors():
        Session(region=region).vpn("start", instance_id)


@vpn_app.command("stop")
def vpn_stop(
    ctx: typer.Context,
    region: Optional[str] = typer.Option(None, "--region", help=_REGION_HELP),
    instance_id: Optional[str] = typer.Option(None, "--instance-id", "-i", help=_INSTANCE_HELP),
) -> None:
    """Stop the VPN."""
    region = _root_option(ctx, "region", region)
    instance_id = _root_option(ctx, "instance_id", instance_id)
    with _handle_errors():
        Session(region=region).vpn("stop", instance_id)


@app.command()
def version() -> None:
    """Print the spotsh version."""
    console.print(f"spotsh {__version__}")


if __name__ == "__main__":
    app()
