"""
The command-line entry point: ``nsclass [options]``.

Every option can also be set via an environment variable ``NSCLASS_<NAME>``,
e.g. ``NSCLASS_LIVENESS_ENDPOINT`` or ``NSCLASS_LOG_FORMAT``.
"""
import dataclasses
from typing import Any, Optional

import click

from nsclass.engines import loggers
from nsclass.reactor import discovery, running
from nsclass.structs import configuration, credentials
from nsclass.utilities import primitives


@dataclasses.dataclass()
class CLIControls:
    """ The controls of the embedding code & tests, which are not for the command line. """
    ready_flag: Optional[primitives.Flag] = None
    stop_flag: Optional[primitives.Flag] = None
    vault: Optional[credentials.Vault] = None
    registry: Optional[discovery.TypeRegistry] = None
    settings: Optional[configuration.OperatorSettings] = None


class LogFormatParamType(click.Choice):
    """ The log formats by their lowercase names: ``plain``, ``full``, ``json``. """

    def __init__(self) -> None:
        super().__init__(choices=[fmt.name.lower() for fmt in loggers.LogFormat])

    def convert(self, value: Any, param: Any, ctx: Any) -> loggers.LogFormat:
        if isinstance(value, loggers.LogFormat):
            return value
        return loggers.LogFormat[super().convert(value, param, ctx).upper()]


pass_controls = click.make_pass_decorator(CLIControls, ensure=True)


@click.command(name='nsclass', context_settings=dict(auto_envvar_prefix='NSCLASS'))
@click.version_option(prog_name='nsclass', package_name='nsclass')
@click.option('-v', '--verbose', is_flag=True, help="Log the debug messages too.")
@click.option('-d', '--debug', is_flag=True, help="Same as verbose, plus asyncio & aiohttp.")
@click.option('-q', '--quiet', is_flag=True, help="Log the warnings & errors only.")
@click.option('--log-format', type=LogFormatParamType(), default='full')
@click.option('--log-prefix/--no-log-prefix', default=None,
              help="Prefix the messages with [namespace]. On by default except for JSON.")
@click.option('--log-refkey', type=str, help="The JSON field for the namespace reference.")
@click.option('-L', '--liveness', 'liveness_endpoint', type=str,
              help="Serve the liveness probe, e.g. http://0.0.0.0:8080/healthz")
@pass_controls
def main(
        controls: CLIControls,
        verbose: bool,
        debug: bool,
        quiet: bool,
        log_format: loggers.LogFormat,
        log_prefix: Optional[bool],
        log_refkey: Optional[str],
        liveness_endpoint: Optional[str],
) -> None:
    """ Start the operator: keep the namespaces in sync with their classes. """
    loggers.configure(debug=debug, verbose=verbose, quiet=quiet,
                      log_format=log_format, log_prefix=log_prefix, log_refkey=log_refkey)
    try:
        running.run(
            liveness_endpoint=liveness_endpoint,
            registry=controls.registry,
            settings=controls.settings,
            stop_flag=controls.stop_flag,
            ready_flag=controls.ready_flag,
            vault=controls.vault,
        )
    except (credentials.LoginError, discovery.DiscoveryError) as e:
        raise click.ClickException(f"The operator cannot start: {e}") from e
