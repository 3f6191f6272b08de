"""Allow `python -m disgordian` to launch the bot."""

from disgordian.main import cli

cli()
