import sys

import click

from tracklib.cli import cli
from tracklib.common import TracklibExpectedError


def main() -> None:
    try:
        cli()
    except TracklibExpectedError as e:
        click.secho(f"{e.__class__.__module__}.{e.__class__.__name__}: ", fg="red", nl=False)
        click.secho(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
