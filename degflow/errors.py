"""
Exception and warning types raised by degflow.

Structural problems with the inputs (misaligned samples, an unset reference
level) are fatal and raised before any modelling. Per-gene numerical problems
are recovered locally and reported through flags on the result tables.
"""


class ShapeMismatchError(ValueError):
    """Counts and sample (or gene) metadata do not line up."""


class MissingReferenceLevelError(ValueError):
    """The factor under test has no explicit (or a non-existent) reference level."""


class DegenerateGeneError(ValueError):
    """A gene cannot support dispersion estimation or testing.

    Raised per gene and caught by the caller, which records ``reason``
    against the gene and carries on with the rest of the batch.
    """

    def __init__(self, reason, gene=None):
        self.reason = reason
        self.gene = gene
        where = f"gene {gene}" if gene is not None else "gene"
        super().__init__(f"{where} is degenerate: {reason}")


class ConvergenceWarning(UserWarning):
    """Some genewise GLM fits hit the iteration limit."""
