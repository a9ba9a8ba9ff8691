"""
Command Line Interface for rstack.
"""
import functools
import logging
import os
import time
from typing import Dict, List, Optional, Tuple

import click

from ..CONVERTERS.to_compose import ComposeConverter
from ..CONVERTERS.to_systemd import SystemdConverter
from ..exceptions import RstackError
from ..MANAGERS.mount_preparer import MOUNTINFO, system_mountpoints
from ..MANAGERS.secret_provisioner import SecretProvisioner
from ..MODELS.deployment_graph import DeploymentGraph
from ..MODELS.ranking import DEFAULT_PRESET, PRESETS, menu
from ..MODELS.run_state import ApplyReport, SettingsReport
from ..MODELS.tool_config import ToolConfig
from ..PARSERS.stack_parser import StackParser
from ..UTILS import http_client
from ..UTILS.host_facts import host_facts
from ..UTILS.string_interpolation import merge_contexts
from . import workflows
from .components import Components

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def _parse_assignments(ctx, param, values) -> Dict[str, str]:
    supplied = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", ctx=ctx, param=param)
        supplied[key.strip()] = value
    return supplied


def handle_errors(func):
    """Reports rstack errors as ``Error: ...`` and exits with status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except RstackError as e:
            logger.debug("Command failed", exc_info=True)
            click.echo(f"Error: {e}", err=True)
            click.get_current_context().exit(1)
    return wrapper


@click.group()
@click.option('--file', '-f', 'stack_file', default=None, help='Stack file path (defaults to the bundled media stack)')
@click.option('--media-root', default=None, help='Root directory for stack data')
@click.option('--env-file', default=None, help='Dotenv file with RSTACK_* settings')
@click.option('--log-level', default=None,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.option('--set', 'assignments', multiple=True, callback=_parse_assignments, metavar='KEY=VALUE',
              help='Supply a secret value instead of being asked')
@click.option('--non-interactive', is_flag=True, help='Never prompt; use supplied values and defaults')
@click.option('--health-timeout', type=float, default=None, help='Seconds to wait for each service to become ready')
@click.pass_context
@handle_errors
def cli(ctx, stack_file, media_root, env_file, log_level, assignments, non_interactive, health_timeout):
    """
    rstack - installs and operates the Plex/Zilean/Riven media stack.

    Runs the stack with docker compose, keeps the shared media mount
    propagating between containers, and pushes settings into services.
    """
    ctx.ensure_object(dict)
    config = ToolConfig.load(
        overrides={
            "stack_file": stack_file,
            "media_root": media_root,
            "log_level": log_level.upper() if log_level else None,
            "health_max_wait": health_timeout,
        },
        env_file=env_file,
        environ=ctx.obj.get('environ'),
    )
    logging.basicConfig(level=config.log_level.upper(), format=LOG_FORMAT, force=True)

    ctx.obj['config'] = config
    ctx.obj['supplied'] = assignments
    ctx.obj['interactive'] = not non_interactive


def _components(ctx) -> Components:
    if 'components' not in ctx.obj:
        facts = _facts(ctx)
        ctx.obj['components'] = Components.build(
            ctx.obj['config'],
            runner=ctx.obj.get('runner'),
            mountinfo_path=ctx.obj.get('mountinfo_path', MOUNTINFO),
            list_mountpoints=ctx.obj.get('list_mountpoints', system_mountpoints),
            sleep=ctx.obj.get('sleep', time.sleep),
            http=ctx.obj.get('http', http_client.request),
            owner=(int(facts["HOST_UID"]), int(facts["HOST_GID"])),
        )
    return ctx.obj['components']


def _facts(ctx) -> Dict[str, str]:
    if 'facts' not in ctx.obj:
        ctx.obj['facts'] = host_facts()
    return ctx.obj['facts']


def _graph(ctx) -> DeploymentGraph:
    config: ToolConfig = ctx.obj['config']
    context = merge_contexts(_facts(ctx), {"MEDIA_ROOT": config.media_root})
    return StackParser(context).parse(config.stack_file)


def _prompt(text: str, default: Optional[str], hidden: bool) -> str:
    return click.prompt(text, default=default, hide_input=hidden, show_default=not hidden)


def _provisioner(ctx, c: Components) -> SecretProvisioner:
    return SecretProvisioner(
        c.store,
        c.config.group_env_file,
        prompt=_prompt,
        supplied=ctx.obj['supplied'],
        interactive=ctx.obj['interactive'],
        sleep=c.sleep,
    )


def _confirm(ctx, given: Optional[str]):
    def confirm(phrase: str) -> Optional[str]:
        if given is not None:
            return given
        if not ctx.obj['interactive']:
            return None
        click.echo(f"This cannot be undone. Type {phrase} to continue.")
        return click.prompt("Confirmation", default="", show_default=False)
    return confirm


def _ask_ranking(ctx, c: Components, graph: DeploymentGraph, given: Optional[str]) -> Optional[str]:
    if given is not None or not ctx.obj['interactive']:
        return given
    if not any(s.settings and s.settings.ranking for s in graph.services.values()):
        return None
    current = None
    for svc in graph.services.values():
        if svc.settings and svc.settings.ranking:
            current = c.environment.lookup(graph, svc.group, workflows.RANKING_KEY)
            break
    click.echo("Ranking presets:")
    for choice, label in menu():
        click.echo(f"  {choice}) {label}")
    return click.prompt("Choose a preset", type=click.Choice(list(PRESETS)),
                        default=current or DEFAULT_PRESET)


def _print_apply(report: ApplyReport) -> None:
    for name, outcome in report.outcomes.items():
        line = f"{name:20} {outcome.state.value:18} {outcome.action or '-'}"
        if outcome.error:
            line += f" ({outcome.error})"
        click.echo(line)
    for warning in report.warnings:
        click.echo(f"warning: {warning}")


def _print_settings(reports: List[SettingsReport]) -> None:
    for report in reports:
        click.echo(
            f"{report.service}: {len(report.pushed)} setting(s) pushed, "
            f"{len(report.unchanged)} unchanged"
        )
        for error in report.errors:
            click.echo(f"  error: {error}")
        for key in report.clobbered:
            click.echo(f"  warning: {key} changed unexpectedly")


def _finish(ctx, ok: bool, summary: str) -> None:
    click.echo(summary)
    if not ok:
        ctx.exit(1)


def _finish_apply(ctx, outcome: Tuple[ApplyReport, List[SettingsReport]]) -> None:
    report, settings = outcome
    _print_apply(report)
    _print_settings(settings)
    ok = report.ready and all(s.ok for s in settings)
    summary = report.summary()
    if report.ready and not ok:
        summary = "⚠️ APPLY SUMMARY: services ready, some settings were not applied."
    _finish(ctx, ok, summary)


@cli.command()
@click.option('--ranking', type=click.Choice(list(PRESETS)), default=None, help='Ranking preset')
@click.option('--skip-runtime', is_flag=True, help='Do not install Docker even if it is missing')
@click.pass_context
@handle_errors
def install(ctx, ranking, skip_runtime):
    """Install (or repair) the whole stack."""
    c = _components(ctx)
    graph = _graph(ctx)
    ranking = _ask_ranking(ctx, c, graph, ranking)
    outcome = workflows.install(c, graph, _provisioner(ctx, c), ranking=ranking,
                                install_runtime=not skip_runtime)
    _finish_apply(ctx, outcome)


@cli.command()
@click.option('--ranking', type=click.Choice(list(PRESETS)), default=None, help='Ranking preset')
@click.option('--rotate', multiple=True, metavar='KEY', help='Regenerate this secret (repeatable)')
@click.pass_context
@handle_errors
def reconfigure(ctx, ranking, rotate):
    """Change operator values or rotate secrets, then re-apply."""
    c = _components(ctx)
    graph = _graph(ctx)
    ranking = _ask_ranking(ctx, c, graph, ranking)
    outcome = workflows.reconfigure(c, graph, _provisioner(ctx, c), ranking=ranking, rotate=rotate)
    _finish_apply(ctx, outcome)


@cli.command()
@click.pass_context
@handle_errors
def update(ctx):
    """Pull newer images and recreate the services that changed."""
    c = _components(ctx)
    graph = _graph(ctx)
    workflows.require_installed(c, graph)
    report = c.orchestrator.update(graph)
    _finish_apply(ctx, (report, workflows.push_settings(c, graph, report)))


@cli.command('test-only')
@click.pass_context
@handle_errors
def test_only(ctx):
    """Verify units, containers, mount propagation and probes."""
    c = _components(ctx)
    graph = _graph(ctx)
    workflows.require_installed(c, graph)
    report = c.verifier.verify(graph)
    for check in report.checks:
        mark = "PASS" if check.passed else "FAIL"
        click.echo(f"[{mark}] {check.name}" + (f": {check.detail}" if check.detail else ""))
    _finish(ctx, report.ok, report.summary())


@cli.command()
@click.pass_context
@handle_errors
def reset(ctx):
    """Restart everything and re-share the media mount; data is kept."""
    c = _components(ctx)
    graph = _graph(ctx)
    workflows.require_installed(c, graph)
    report = c.resetter.reset(graph, "soft")
    if report.apply is not None:
        _print_apply(report.apply)
    _finish(ctx, report.ok, report.summary())


@cli.command('wipe-db')
@click.option('--confirm', default=None, metavar='PHRASE', help='Confirmation phrase (WIPE-DB)')
@click.pass_context
@handle_errors
def wipe_db(ctx, confirm):
    """Stop the stack and empty every database."""
    c = _components(ctx)
    graph = _graph(ctx)
    report = c.resetter.wipe_db(graph, _confirm(ctx, confirm))
    for path in report.wiped:
        click.echo(f"wiped {path}")
    _finish(ctx, report.ok, report.summary())


@cli.command('wipe-db-reset')
@click.option('--confirm', default=None, metavar='PHRASE', help='Confirmation phrase (WIPE-DB)')
@click.pass_context
@handle_errors
def wipe_db_reset(ctx, confirm):
    """Empty every database, then start the stack again."""
    c = _components(ctx)
    graph = _graph(ctx)
    report = c.resetter.wipe_db(graph, _confirm(ctx, confirm), reapply=True)
    settings = []
    if report.apply is not None:
        _print_apply(report.apply)
        settings = workflows.push_settings(c, graph, report.apply)
        _print_settings(settings)
    _finish(ctx, report.ok and all(s.ok for s in settings), report.summary())


@cli.command('wipe-server')
@click.option('--confirm', default=None, metavar='PHRASE', help='Confirmation phrase (WIPE-SERVER)')
@click.pass_context
@handle_errors
def wipe_server(ctx, confirm):
    """Remove the stack, its data and Docker itself."""
    c = _components(ctx)
    graph = _graph(ctx)
    report = c.resetter.reset(graph, "hard", _confirm(ctx, confirm))
    for error in report.errors:
        click.echo(f"error: {error}")
    _finish(ctx, report.ok, report.summary())


@cli.command()
@click.pass_context
@handle_errors
def status(ctx):
    """List service status"""
    c = _components(ctx)
    graph = _graph(ctx)
    click.echo(f"{'SERVICE':20} {'STATUS':12} {'HEALTH':10}")
    click.echo("-" * 44)
    for state in c.orchestrator.status(graph):
        click.echo(f"{state.service_name:20} {state.container_status:12} {state.health_status:10}")


@cli.command()
@click.option('--out', '-o', default='dist', help='Output directory')
@click.pass_context
@handle_errors
def render(ctx, out):
    """Write compose files and systemd units without touching the host."""
    config: ToolConfig = ctx.obj['config']
    graph = _graph(ctx)
    written = ComposeConverter(config).convert(graph, output_dir=os.path.join(out, "compose"))
    written += SystemdConverter(config).convert(graph, os.path.join(out, "systemd"))
    for path in written:
        click.echo(path)
    click.echo(f"✅ RENDER SUMMARY: {len(written)} file(s) written to {out}.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
