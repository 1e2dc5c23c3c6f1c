"""Allow ``python3 -m testdroid_proxy``; delegates to testdroid_proxy.main.cli()."""

from testdroid_proxy.main import cli

if __name__ == "__main__":
    cli()
