"""
Exception hierarchy for the p-PCA inference engine.

All errors derive from PPCAError so callers can catch every package error
with a single clause. The concrete classes also derive from the builtin
exception that matches their meaning (ValueError for bad shapes, RuntimeError
for aborted runs), so existing ``except ValueError`` handlers keep working.
"""

from typing import Optional


class PPCAError(Exception):
    """Base class for all p-PCA errors."""


class InvalidShape(PPCAError, ValueError):
    """Raised when the model configuration or an input array is malformed."""


class NumericalRejection(PPCAError, ArithmeticError):
    """
    Non-finite log-density or gradient inside one proposal.

    Raised by the leapfrog integrator and caught by the sampler, which
    rejects the proposal and keeps sampling.

    Parameters
    ----------
    message : str
        Description of the failure
    block : str, optional
        Parameter block holding the first non-finite gradient entry
    iteration : int, optional
        Sampler iteration during which the failure happened
    """

    def __init__(
        self,
        message: str,
        block: Optional[str] = None,
        iteration: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.block = block
        self.iteration = iteration


class DivergentChain(PPCAError, RuntimeError):
    """
    Too many non-finite proposals or rejections in one chain.

    Attributes
    ----------
    partial_chain : Chain or None
        Draws emitted before the run was aborted
    iteration : int or None
        Iteration at which the threshold was crossed
    block : str or None
        Block that produced the last non-finite evaluation, if any
    """

    def __init__(
        self,
        message: str,
        partial_chain=None,
        iteration: Optional[int] = None,
        block: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.partial_chain = partial_chain
        self.iteration = iteration
        self.block = block


class DiagnosticsUnavailable(PPCAError):
    """A cross-chain statistic was requested without enough chains."""
