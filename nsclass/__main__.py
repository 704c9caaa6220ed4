"""
CLI entry point, when used as a module: `python -m nsclass`.

Useful for debugging in the IDEs (use the start-mode "Module", module "nsclass").
"""
from nsclass import cli

if __name__ == '__main__':
    cli.main()
