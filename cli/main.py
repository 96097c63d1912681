import sys
from pathlib import Path
from typing import NoReturn

import click

import config
import provisioning
import recipes
import vcs_helpers
from errors import GrammarError


def fail(e: GrammarError) -> NoReturn:
    click.echo(f"Error: {e}", err=True)
    sys.exit(1)


def provisioner_for(ctx: click.Context) -> provisioning.GrammarProvisioner:
    try:
        settings = config.load_settings(ctx.obj["config_path"], ctx.obj["abi_ceiling"])
    except GrammarError as e:
        fail(e)
    return provisioning.GrammarProvisioner(settings)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Config file (TOML, or JSON as written by `export`).",
)
@click.option(
    "--abi-ceiling",
    type=int,
    help="Highest grammar ABI (LANGUAGE_VERSION) the host can load.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, abi_ceiling: int | None):
    ctx.obj = {"config_path": config_path, "abi_ceiling": abi_ceiling}


@cli.command()
@click.argument("languages", nargs=-1, required=True)
@click.pass_context
def install(ctx: click.Context, languages: tuple[str, ...]):
    """Build and register grammars, along with everything they depend on."""
    p = provisioner_for(ctx)
    try:
        vcs_helpers.require_git()
        for lang in languages:
            artifact = p.ensure(lang)
            click.echo(f"{lang}\t{artifact}")
    except GrammarError as e:
        fail(e)


@cli.command()
@click.argument("languages", nargs=-1, required=True)
@click.pass_context
def resolve(ctx: click.Context, languages: tuple[str, ...]):
    """Print the commit each grammar would be built from, without building it."""
    p = provisioner_for(ctx)
    try:
        vcs_helpers.require_git()
        for lang in languages:
            resolved = p.resolve_revision(lang)
            click.echo(f"{lang}\t{resolved.commit}\tABI {resolved.abi}")
    except GrammarError as e:
        fail(e)


@cli.command()
@click.argument("languages", nargs=-1)
@click.pass_context
def export(ctx: click.Context, languages: tuple[str, ...]):
    """Print recipes pinned to the installed revisions, as a JSON config file."""
    p = provisioner_for(ctx)
    try:
        click.echo(recipes.export_pinned(p.pinned_recipes(list(languages))))
    except GrammarError as e:
        fail(e)


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """List configured grammars and whether each one is installed."""
    p = provisioner_for(ctx)
    if not p.settings.recipes:
        click.echo("No grammars configured.", err=True)
        return

    for lang in sorted(p.settings.recipes):
        state = p.state(lang)
        recorded = p.ledger.query(lang)
        match state:
            case provisioning.InstallationState.INSTALLED:
                assert recorded is not None
                detail = f"{recorded.commit[:12]} (ABI {recorded.abi})"
            case provisioning.InstallationState.UNTRACKED:
                detail = "built from an unknown revision"
            case _:
                detail = ""
        click.echo(f"{lang}\t{state.name.lower()}\t{detail}".rstrip())


if __name__ == "__main__":
    cli()
