"""CLI commands for chargesim.

Example:
    $ chargesim -v simulate --msisdn 85255610347
    $ chargesim validate --config sim.yaml
"""

from chargesim.cli.simulate import cli, main, simulate, validate

__all__ = [
    "cli",
    "main",
    "simulate",
    "validate",
]
