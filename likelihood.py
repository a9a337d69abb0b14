"""
Love-wave dispersion data and likelihood evaluation
Forward modelling with disba, Jacobian by finite differences
"""

import numpy as np
import warnings
from disba import PhaseDispersion
from typing import Optional, Sequence, Tuple

from utils import LayeredModel, copy_to_vector, copy_to_model, inverse_Cm, initialize_Cm

# Misfit returned when the forward model fails
FAILED_MISFIT = 1e10


class DispersionData:
    """
    Observed Love-wave phase velocities indexed by frequency

    Only the target range [ffirst, flast] takes part in the inversion.
    Predictions made by the likelihood are attached to the data so they can
    be saved afterwards.
    """

    def __init__(self, fmin: float = 1.0 / 40.0, fmax: float = 1.0 / 2.0):
        if fmin <= 0.0 or fmax <= fmin:
            raise ValueError("need 0 < fmin < fmax")
        self.fmin = fmin
        self.fmax = fmax

        self.freq = np.zeros(0)
        self.velocity = np.zeros(0)
        self.sigma = np.zeros(0)
        self.pred = np.zeros(0)

        self.ffirst = 0
        self.flast = -1

    def set_observations(self, freq: np.ndarray, velocity: np.ndarray,
                         sigma: Optional[np.ndarray] = None,
                         default_sigma: float = 0.02) -> None:
        """
        Parameters:
        -----------
        freq : np.ndarray
            Frequencies (Hz), increasing
        velocity : np.ndarray
            Observed phase velocity (m/s)
        sigma : np.ndarray, optional
            Observation error (m/s), defaults to default_sigma * velocity
        """
        freq = np.asarray(freq, dtype=float)
        velocity = np.asarray(velocity, dtype=float)

        if len(freq) != len(velocity):
            raise ValueError("frequency and velocity arrays must have the same length")
        if len(freq) == 0:
            raise ValueError("no observations")
        if np.any(np.diff(freq) <= 0):
            raise ValueError("frequencies must be strictly increasing")

        if sigma is None:
            sigma = default_sigma * velocity
        sigma = np.asarray(sigma, dtype=float)

        if np.any(sigma <= 0):
            warnings.warn("Non-positive standard deviations found, using default")
            sigma = np.where(sigma > 0, sigma, default_sigma * velocity)

        self.freq = freq
        self.velocity = velocity
        self.sigma = sigma
        self.pred = np.full_like(velocity, np.nan)
        self.ffirst = 0
        self.flast = len(freq) - 1

    def load(self, filename: str) -> None:
        """Read frequency, velocity and optional sigma columns"""
        table = np.loadtxt(filename, ndmin=2)
        if table.shape[1] < 2:
            raise ValueError(f"{filename}: need at least frequency and velocity columns")
        sigma = table[:, 2] if table.shape[1] > 2 else None
        self.set_observations(table[:, 0], table[:, 1], sigma)

    def initialise_target(self) -> None:
        """Restrict the target range to frequencies inside [fmin, fmax]"""
        inside = np.flatnonzero((self.freq >= self.fmin) & (self.freq <= self.fmax))
        if len(inside) == 0:
            raise ValueError(f"no observations between {self.fmin} and {self.fmax} Hz")
        self.ffirst = int(inside[0])
        self.flast = int(inside[-1])

    def target_indices(self, frequency_thin: float = 0.0) -> np.ndarray:
        """Indices of the target range, thinned to a minimum frequency spacing"""
        indices = np.arange(self.ffirst, self.flast + 1)
        if frequency_thin <= 0.0:
            return indices

        kept = [indices[0]]
        for i in indices[1:]:
            if self.freq[i] - self.freq[kept[-1]] >= frequency_thin:
                kept.append(i)
        return np.array(kept)

    def save_predictions(self, filename: str) -> None:
        """Write frequency, observed and predicted velocity of the target range"""
        s = slice(self.ffirst, self.flast + 1)
        np.savetxt(filename,
                   np.column_stack([self.freq[s], self.velocity[s], self.sigma[s], self.pred[s]]),
                   fmt='%.9e', header='frequency observed sigma predicted')


def love_phase_velocity(freq: np.ndarray, model: LayeredModel, dc: float = 0.005) -> np.ndarray:
    """
    Fundamental mode Love-wave phase velocity (m/s)

    Frequencies where no root is found come back as NaN.
    """
    periods = 1.0 / np.asarray(freq, dtype=float)
    order = np.argsort(periods)
    t = periods[order]

    velocity = np.full(len(t), np.nan)

    try:
        pd = PhaseDispersion(*model.velocity_model('love'), dc=dc)
        dispersion = pd(t, mode=0, wave='love')
    except ValueError as e:
        warnings.warn(f"Love-wave forward modelling failed: {e}", RuntimeWarning)
        return velocity
    except Exception as e:
        warnings.warn(f"Unexpected error in forward modelling: {e}", RuntimeWarning)
        return velocity

    found = np.isin(t, dispersion.period)
    velocity[found] = dispersion.velocity[:np.count_nonzero(found)] * 1.0e3

    result = np.empty_like(velocity)
    result[order] = velocity
    return result


class LoveLikelihood:
    """
    Gaussian likelihood of Love-wave dispersion data

        like = 0.5 r^T Cd^-1 r + 0.5 (m - m0)^T Cm^-1 (m - m0)

    with r observed minus predicted phase velocity and m0 the reference
    model. The mesh settings (order, high_order, boundary_order, scale,
    threshold) of a spectral element solver are kept with the likelihood so a
    run records them, the disba solver does not use them.
    """

    def __init__(self, threshold: float = 0.0, order: int = 5,
                 high_order: int = 5, boundary_order: int = 5,
                 scale: float = 1.0e-4, frequency_thin: float = 0.001,
                 fd_step: float = 1.0e-4, dc: float = 0.005):
        if scale <= 0.0:
            raise ValueError("scale must be positive")
        for name, value in (('order', order), ('high order', high_order),
                            ('boundary order', boundary_order)):
            if value < 1:
                raise ValueError(f"{name} must be 1 or greater")
        if fd_step <= 0.0:
            raise ValueError("fd_step must be positive")

        self.threshold = threshold
        self.order = order
        self.high_order = high_order
        self.boundary_order = boundary_order
        self.scale = scale
        self.frequency_thin = frequency_thin
        self.fd_step = fd_step
        self.dc = dc

    def predict(self, data: DispersionData, model: LayeredModel) -> Tuple[np.ndarray, np.ndarray]:
        """Target indices and predicted phase velocities there"""
        indices = data.target_indices(self.frequency_thin)
        return indices, love_phase_velocity(data.freq[indices], model, self.dc)

    def jacobian(self, data: DispersionData, model: LayeredModel,
                 predicted: np.ndarray) -> np.ndarray:
        """Forward difference derivatives of the predictions w.r.t. free parameters"""
        indices = data.target_indices(self.frequency_thin)
        model_v, _ = copy_to_vector(model)
        perturbed = model.copy()

        G = np.zeros((len(indices), len(model_v)))
        for j in range(len(model_v)):
            h = self.fd_step * max(abs(model_v[j]), 1.0e-6)
            v = model_v.copy()
            v[j] += h
            copy_to_model(v, perturbed)

            column = (love_phase_velocity(data.freq[indices], perturbed, self.dc) - predicted) / h
            if np.all(np.isfinite(column)):
                G[:, j] = column
            else:
                warnings.warn(f"Jacobian column {j} undefined, set to zero", RuntimeWarning)

        return G

    def __call__(self, data: DispersionData, model: LayeredModel,
                 reference: LayeredModel, damping: Sequence[float],
                 posterior: bool = False) -> Tuple[float, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Evaluate misfit, Jacobian, gradient, residuals and data covariance

        Parameters:
        -----------
        data : DispersionData
            Observations, predictions are attached as a side effect
        model : LayeredModel
            Current model
        reference : LayeredModel
            Prior mean model
        damping : sequence of 4 floats
            Prior standard deviations for [rho, vs, xi, vpvs]
        posterior : bool, default=False
            Ignore the data and evaluate the prior only

        Returns:
        --------
        like : float
            Negative log-likelihood
        G : np.ndarray
            Jacobian (n_observations, n_free)
        dLdp : np.ndarray
            Gradient of like w.r.t. the free parameters
        residuals : np.ndarray
            Observed minus predicted (n_observations,)
        Cd : np.ndarray
            Data variances (n_observations,)
        """
        model_v, _ = copy_to_vector(model)
        model_0, _ = copy_to_vector(reference)
        if len(model_v) != len(model_0):
            raise ValueError("model and reference have different free parameters")

        Cm_inv = inverse_Cm(initialize_Cm(model, damping))
        dm = model_v - model_0
        prior_like = 0.5 * np.sum(Cm_inv * dm ** 2)

        indices, predicted = self.predict(data, model)
        data.pred[:] = np.nan
        data.pred[indices] = predicted

        Cd = data.sigma[indices] ** 2
        nobs = len(indices)

        if posterior:
            G = np.zeros((nobs, len(model_v)))
            residuals = np.zeros(nobs)
            return prior_like, G, Cm_inv * dm, residuals, Cd

        if not np.all(np.isfinite(predicted)):
            warnings.warn("Forward modelling produced invalid phase velocities", RuntimeWarning)
            return (FAILED_MISFIT, np.zeros((nobs, len(model_v))), np.zeros(len(model_v)),
                    np.zeros(nobs), Cd)

        residuals = data.velocity[indices] - predicted
        G = self.jacobian(data, model, predicted)

        like = 0.5 * np.sum(residuals ** 2 / Cd) + prior_like
        dLdp = -G.T @ (residuals / Cd) + Cm_inv * dm

        return like, G, dLdp, residuals, Cd
