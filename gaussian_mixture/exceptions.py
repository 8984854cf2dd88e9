# gaussian_mixture/exceptions.py
"""Error types."""


class ContractViolation(AssertionError):
    """A caller broke a precondition (bad state index, priors length, axis).

    Raised instead of returning a failure; it signals a programming error and
    is not meant to be caught.
    """
