"""Release updater.

Checks GitHub for a newer release of a docker compose deployment, swaps the
on-disk tree for the new release while carrying migration folders across,
then migrates and restarts the stack.
"""

__version__ = "0.1.0"
