from dexarb.main import cli

cli()
