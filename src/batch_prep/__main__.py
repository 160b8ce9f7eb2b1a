"""Allow ``python -m batch_prep``."""

from batch_prep.cli.main import cli

cli()
