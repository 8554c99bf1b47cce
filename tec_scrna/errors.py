#!/usr/bin/env python3
"""
Recoverable per-cluster failures of the differential analysis stage
"""


class DegenerateDesignError(ValueError):
    """A cluster cannot be tested: too few phenotype levels, samples or genes"""


class ModelFitError(RuntimeError):
    """A statistical model failed to converge for a cluster"""
