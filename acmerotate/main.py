import asyncio
import logging
import logging.config
from pathlib import Path
from typing import Any

import click
import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from acmerotate.client import AcmeClient
from acmerotate.exceptions import ProvisioningError
from acmerotate.installer import CertificateInstaller
from acmerotate.responder import ChallengeResponder
from acmerotate.scheduler import RotationScheduler
from acmerotate.server import HttpsListener
from acmerotate.tls import TlsConfigCell
from acmerotate.util import generate_rsa_key, generate_ec_key
from acmerotate.workflow import ProvisioningWorkflow

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Config(BaseSettings):
    model_config = SettingsConfigDict(extra="forbid", env_prefix="ACMEROTATE_")

    client: AcmeClient.Config = Field(default_factory=AcmeClient.Config)
    responder: ChallengeResponder.Config = Field(default_factory=ChallengeResponder.Config)
    workflow: ProvisioningWorkflow.Config
    scheduler: RotationScheduler.Config = Field(default_factory=RotationScheduler.Config)
    listener: HttpsListener.Config = Field(default_factory=HttpsListener.Config)
    logging: Any = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream)

    return Config.model_validate(config)


def setup_logging(config: Config) -> None:
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def make_workflow(config: Config) -> ProvisioningWorkflow:
    return ProvisioningWorkflow(config.workflow, config.client, config.responder)


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path(exists=True), required=True)
def run(config_file: str):
    """Obtains a certificate, serves it over HTTPS and rotates it until interrupted.

    Exits with an error if the initial certificate cannot be obtained.
    """
    config = load_config(config_file)
    setup_logging(config)

    click.echo(f"Starting for {config.workflow.domain}")
    try:
        asyncio.run(serve(config))
    except ProvisioningError as e:
        raise click.ClickException(f"Could not obtain the initial certificate: {e}")
    except KeyboardInterrupt:
        click.echo("Stopped.")


async def serve(config: Config) -> None:
    cell = TlsConfigCell()
    scheduler = RotationScheduler(config.scheduler, make_workflow(config), cell)
    listener = HttpsListener(config.listener, cell)

    await scheduler.start()
    try:
        await listener.start()
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down")
        await listener.stop()
        await scheduler.stop()


@main.command()
@click.option("--config-file", envvar="APP_CONFIG_FILE", type=click.Path(exists=True), required=True)
@click.option("--out-dir", type=click.Path(file_okay=False), required=True)
def provision(config_file: str, out_dir: str):
    """Obtains a single certificate and writes privkey.pem and fullchain.pem to OUT_DIR."""
    config = load_config(config_file)
    setup_logging(config)

    try:
        certificate = asyncio.run(make_workflow(config).run())
        tls_config = CertificateInstaller().install(certificate)
    except ProvisioningError as e:
        raise click.ClickException(str(e))

    key_path, chain_path = tls_config.write(Path(out_dir))
    click.echo(f"Wrote {key_path} and {chain_path}, valid until {tls_config.not_valid_after}.")


@main.command()
@click.argument("account-key-file", type=click.Path())
@click.option(
    "--key-type",
    "-k",
    type=click.Choice(["rsa", "ec"], case_sensitive=False),
    default="ec",
    show_default=True,
)
def generate_account_key(account_key_file, key_type):
    """Generates an account key that can be configured as workflow.account_key."""
    click.echo(f"Generating account key of type {key_type} at {account_key_file}.")
    account_key_file = Path(account_key_file)
    if key_type == "rsa":
        generate_rsa_key(account_key_file)
    else:
        generate_ec_key(account_key_file)


if __name__ == "__main__":
    main()
