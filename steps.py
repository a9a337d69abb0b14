"""
Least-squares step strategies for the dispersion inversion loop
"""

import numpy as np
import scipy.linalg as la

from utils import inverse_Cm


class LeastSquaresIterator:
    """
    Base class of the model update strategies

    compute_step fills model_v_proposed in place and returns False only on an
    unrecoverable numerical failure.
    """

    name = 'base'

    def compute_step(self, epsilon: float,
                     Cd: np.ndarray,
                     Cm: np.ndarray,
                     residuals: np.ndarray,
                     G: np.ndarray,
                     dLdp: np.ndarray,
                     model_mask: np.ndarray,
                     model_v: np.ndarray,
                     model_0: np.ndarray,
                     model_v_proposed: np.ndarray) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SimpleStep(LeastSquaresIterator):
    """
    Preconditioned steepest descent

    The gradient is scaled per parameter by the prior standard deviation, or
    by the parameter magnitude where there is no prior, and normalised so the
    largest component moves epsilon * step_fraction scale units.
    """

    name = 'simple'

    def __init__(self, step_fraction: float = 0.05):
        if step_fraction <= 0.0:
            raise ValueError("step_fraction must be positive")
        self.step_fraction = step_fraction

    def compute_step(self, epsilon, Cd, Cm, residuals, G, dLdp,
                     model_mask, model_v, model_0, model_v_proposed):
        if not np.all(np.isfinite(dLdp)):
            return False

        scale = np.where(Cm > 0, np.sqrt(np.maximum(Cm, 0.0)), np.abs(model_v))
        scale[scale == 0.0] = 1.0

        direction = scale * dLdp
        norm = np.max(np.abs(direction)) if direction.size else 0.0
        if norm == 0.0:
            model_v_proposed[:] = model_v
            return True

        model_v_proposed[:] = model_v - epsilon * self.step_fraction * scale * direction / norm
        return True

    def __repr__(self) -> str:
        return f"SimpleStep(step_fraction={self.step_fraction})"


class QuasiNewton(LeastSquaresIterator):
    """
    Gauss-Newton step with a Gaussian prior

        H   = G^T Cd^-1 G + Cm^-1
        rhs = G^T Cd^-1 r - Cm^-1 (m - m0)
        m'  = m + epsilon H^-1 rhs
    """

    name = 'quasi-newton'

    def compute_step(self, epsilon, Cd, Cm, residuals, G, dLdp,
                     model_mask, model_v, model_0, model_v_proposed):
        Cd_inv = 1.0 / Cd
        Cm_inv = inverse_Cm(Cm)

        GtCd = G.T * Cd_inv
        H = GtCd @ G + np.diag(Cm_inv)
        rhs = GtCd @ residuals - Cm_inv * (model_v - model_0)

        if not (np.all(np.isfinite(H)) and np.all(np.isfinite(rhs))):
            return False

        try:
            factor = la.cho_factor(H)
        except la.LinAlgError:
            # Singular or indefinite system
            return False

        model_v_proposed[:] = model_v + epsilon * la.cho_solve(factor, rhs)
        return True
