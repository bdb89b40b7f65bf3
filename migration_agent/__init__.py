"""Migration Agent: supervised, safety-constrained code migrations.

Turns an approved recommendation into commits on an isolated backup branch
and a pull request for human review. The agent never merges.
"""

__version__ = "0.1.0"
