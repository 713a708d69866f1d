"""
Exception types raised by the effect-size and meta-regression stages.
"""


class FitmetaError(ValueError):
    """Base class for fitmeta errors."""


class DomainError(FitmetaError):
    """A value lies outside the domain of a transform (log of <= 0, zero SD, ...)."""


class SingularDesignError(FitmetaError):
    """Design matrix is rank deficient or the marginal covariance is not invertible."""


class DimensionMismatchError(FitmetaError):
    """A prediction row does not match the fitted coefficient layout."""
