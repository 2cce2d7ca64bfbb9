"""Main entry point when executing apithrottle as a package.

This allows running the package using python -m apithrottle.
"""

from apithrottle.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
