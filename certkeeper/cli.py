import logging
import logging.handlers
import os
from contextlib import contextmanager
from datetime import datetime

import click
import tzlocal
from dateutil.parser import parse as parse_dt

from .config_utils import ConfigurationError
from .errors import CertkeeperServiceError
from .lifecycle import RenewalManager
from .registry import CertkeeperConfig, LifecycleEvent
from .registry.config import LOG_LEVELS
from .version import __version__

DEFAULT_CONFIG_FILE = 'certkeeper.yml'
LOG_LEVEL_VARIABLE = 'CERTKEEPER_LOG_LEVEL'
logger = logging.getLogger(__name__)


def _log_config(level=logging.INFO, syslog=False):
    _logger = logging.getLogger('certkeeper')
    _logger.setLevel(level)
    for handler in list(_logger.handlers):
        _logger.removeHandler(handler)
    if syslog:
        handler = logging.handlers.SysLogHandler(address='/dev/log')
        formatter = logging.Formatter(
            'certkeeper[%(process)d]: %(name)s - %(levelname)s - %(message)s'
        )
    else:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    handler.setFormatter(formatter)
    _logger.addHandler(handler)


def _parse_level(level_str, source):
    try:
        return LOG_LEVELS[level_str.lower()]
    except KeyError:
        raise click.BadParameter(
            f"'{level_str}' is not a log level; choose from "
            f"{', '.join(LOG_LEVELS)}.",
            param_hint=source,
        )


@contextmanager
def exception_manager():
    msg = exc = None
    try:
        yield
    except click.ClickException:
        raise
    except ConfigurationError as e:
        msg = f"Configuration problem: {str(e)}"
        exc = e
    except CertkeeperServiceError as e:
        msg = f"Service problem: {str(e)}"
        exc = e

    if exc is not None:
        logger.error(msg, exc_info=exc)
        raise click.ClickException(msg)


def _lazy_cfg(config, no_external_config, log_override, syslog):
    config = config or DEFAULT_CONFIG_FILE
    try:
        cfg = CertkeeperConfig.from_file(
            config, allow_external_config=not no_external_config
        )
    except IOError as e:
        raise click.ClickException(
            f"I/O Error processing config from {config}: {e}",
        ) from e
    # settings from the config file apply unless overridden
    if log_override is None:
        _log_config(
            cfg.logging.numeric_level, syslog=syslog or cfg.logging.syslog
        )
    elif cfg.logging.syslog and not syslog:
        _log_config(log_override, syslog=True)

    while True:
        yield cfg


def _parse_at_time(at_time):
    if at_time is None:
        return datetime.now(tz=tzlocal.get_localzone())
    try:
        result = parse_dt(at_time)
    except (ValueError, OverflowError) as e:
        raise click.BadParameter(
            f"Cannot parse timestamp '{at_time}'", param_hint='--at-time'
        ) from e
    if result.tzinfo is None:
        result = result.replace(tzinfo=tzlocal.get_localzone())
    return result


def _manager(ctx) -> RenewalManager:
    cfg: CertkeeperConfig = next(ctx.obj['config'])
    return RenewalManager.from_config(cfg)


@click.group()
@click.version_option(prog_name='certkeeper', version=__version__)
@click.option('--config',
              help=('YAML file to load configuration from '
                    f'[default: {DEFAULT_CONFIG_FILE}]'),
              required=False, type=click.Path(readable=True, dir_okay=False))
@click.option('--no-external-config',
              help='disable loading files referenced by the configuration',
              required=False, type=bool, is_flag=True)
@click.option('--log-level', required=False, type=str,
              help=(f'log level ({", ".join(LOG_LEVELS)}) '
                    f'[default: ${LOG_LEVEL_VARIABLE}, or the configured '
                    f'level]'))
@click.option('--syslog', help='send log output to syslog',
              required=False, type=bool, is_flag=True)
@click.pass_context
@exception_manager()
def cli(ctx, config, no_external_config, log_level, syslog):
    log_override = None
    if log_level is not None:
        log_override = _parse_level(log_level, '--log-level')
    elif os.environ.get(LOG_LEVEL_VARIABLE):
        log_override = _parse_level(
            os.environ[LOG_LEVEL_VARIABLE], LOG_LEVEL_VARIABLE
        )
    _log_config(
        log_override if log_override is not None else logging.INFO,
        syslog=syslog
    )
    ctx.ensure_object(dict)
    ctx.obj['config'] = _lazy_cfg(
        config, no_external_config, log_override, syslog
    )


@cli.command(help='issue or renew certificates')
@click.pass_context
@click.argument('labels', type=str, nargs=-1, metavar='[CERT_LABEL]...')
@click.option('--all', 'renew_all', type=bool, is_flag=True,
              help='renew all managed certificates')
@click.option('--due', type=bool, is_flag=True,
              help='only renew certificates that are missing or about to '
                   'expire')
@click.option('--at-time', required=False, type=str,
              help=('ISO 8601 timestamp at which to evaluate expiry '
                    '[default: now]'))
@click.option('--jobs', type=click.IntRange(min=1), default=1,
              show_default=True,
              help='number of certificates to renew concurrently')
@exception_manager()
def renew(ctx, labels, renew_all, due, at_time, jobs):
    if not labels and not renew_all and not due:
        raise click.ClickException(
            "Specify certificate labels, or pass --all or --due."
        )
    if labels and renew_all:
        raise click.ClickException(
            "--all cannot be combined with certificate labels."
        )
    manager = _manager(ctx)
    at_time = _parse_at_time(at_time)

    targets = list(labels) if labels else manager.labels
    # fail early on unknown labels
    for label in targets:
        manager[label]
    if due:
        due_labels = set(manager.due(at_time))
        targets = [label for label in targets if label in due_labels]
        if not targets:
            click.echo("No certificates are due for renewal.")
            return

    outcomes = manager.renew_many(targets, max_workers=jobs)
    for outcome in outcomes:
        click.echo(outcome.summary())
    if any(not outcome.committed for outcome in outcomes):
        ctx.exit(1)


@cli.command(help='show the resolved hooks of a certificate')
@click.pass_context
@click.argument('cert_label', type=str, metavar='CERT_LABEL')
@click.argument('event', type=click.Choice([e.value for e in LifecycleEvent]),
                required=False)
@exception_manager()
def hooks(ctx, cert_label, event):
    cfg: CertkeeperConfig = next(ctx.obj['config'])
    event_hooks = cfg.get_event_hooks(cert_label)
    events = [LifecycleEvent(event)] if event else list(LifecycleEvent)
    for ev in events:
        names = event_hooks[ev].names
        click.echo(f"{ev}: {', '.join(names) if names else '(none)'}")


@cli.command(name='check-config', help='validate the configuration')
@click.pass_context
@exception_manager()
def check_config(ctx):
    cfg: CertkeeperConfig = next(ctx.obj['config'])
    catalog = cfg.hook_catalog
    click.echo(
        f"Configuration OK: {len(cfg.certificates)} certificate(s), "
        f"{len(list(cfg.authorities))} authorit"
        f"{'y' if len(list(cfg.authorities)) == 1 else 'ies'}, "
        f"{len(catalog.hooks)} hook(s), {len(catalog.groups)} hook group(s)."
    )


@cli.command(help='show the state of the managed certificates')
@click.pass_context
@click.option('--at-time', required=False, type=str,
              help=('ISO 8601 timestamp at which to evaluate expiry '
                    '[default: now]'))
@exception_manager()
def status(ctx, at_time):
    manager = _manager(ctx)
    at_time = _parse_at_time(at_time)
    for cert in manager:
        click.echo(f"{cert.label}:")
        click.echo(f"  certificate: {cert.spec.cert_path}")
        click.echo(f"  key: {cert.spec.key_path}")
        if cert.certificate is None:
            click.echo("  status: missing")
        else:
            click.echo(f"  serial: {cert.certificate.serial_number:x}")
            click.echo(f"  expires: {cert.expires_at.isoformat()}")
        if cert.key is not None:
            click.echo(f"  key fingerprint: {cert.key.fingerprint}")
        click.echo(f"  due: {'yes' if cert.is_due(at_time) else 'no'}")
