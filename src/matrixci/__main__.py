from matrixci.cli import cli

cli()
