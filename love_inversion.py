"""
Love-wave dispersion inversion
Damped least-squares iterations with step size control and backtracking
"""

import numpy as np
import warnings
from typing import Callable, List, Optional, Sequence, Tuple

from likelihood import DispersionData, LoveLikelihood
from steps import LeastSquaresIterator, QuasiNewton, SimpleStep
from utils import (PRIOR_MAX, PRIOR_MIN, LayeredModel, ReferenceModel,
                   copy_to_model, copy_to_vector, initialize_Cm, validate)

EPSILON_MIN = 1.0e-6


class StepComputationFailed(RuntimeError):
    """A step strategy could not compute an update"""

    def __init__(self, iteration: int, strategy: int, name: str = ''):
        self.iteration = iteration
        self.strategy = strategy
        super().__init__(f"iteration {iteration}: {name or 'step'} strategy {strategy} "
                         f"failed to compute an update")


class LoveInverter:
    """
    Love-wave dispersion inverter

    Alternates a simple gradient step and a quasi-Newton step, each with its
    own step size. A proposal outside the prior bounds halves the step size
    and is recomputed, a proposal that increases the misfit is backtracked.
    """

    def __init__(self, epsilon: float = 1.0, max_iterations: int = 5,
                 mode: int = 0, alternate: bool = True,
                 prior_min: Sequence[float] = PRIOR_MIN,
                 prior_max: Sequence[float] = PRIOR_MAX,
                 epsilon_min: float = EPSILON_MIN,
                 steps: Optional[Sequence[LeastSquaresIterator]] = None):
        """
        Parameters:
        -----------
        epsilon : float, default=1.0
            Initial step size of both strategies
        max_iterations : int, default=5
            Number of accepted iterations
        mode : int, default=0
            Strategy used when not alternating: 0 simple gradient descent,
            1 quasi-Newton
        alternate : bool, default=True
            Alternate the strategies by iteration parity, mode is then unused
        prior_min, prior_max : sequence of 4 floats
            Hard bounds for [rho, vs, xi, vpvs]
        epsilon_min : float
            Step size floor below which the inversion stops
        steps : sequence of 2 LeastSquaresIterator, optional
            Strategies indexed by mode
        """
        if epsilon <= 0.0:
            raise ValueError("epsilon must be positive")
        if max_iterations < 1:
            raise ValueError("need at least one iteration")
        if mode not in (0, 1):
            raise ValueError("mode must be 0 (simple gradient desc.) or 1 (q-newton)")

        self.epsilon = epsilon
        self.max_iterations = max_iterations
        self.mode = mode
        self.alternate = alternate
        self.prior_min = np.asarray(prior_min, dtype=float)
        self.prior_max = np.asarray(prior_max, dtype=float)
        self.epsilon_min = epsilon_min

        self.steps = list(steps) if steps is not None else [SimpleStep(), QuasiNewton()]
        if len(self.steps) != 2:
            raise ValueError("need exactly two step strategies")

        self.misfit_history: List[float] = []
        self.epsilon_trace: List[Tuple[int, float]] = []
        self.events: List[str] = []
        self.final_epsilon: List[float] = []

    def select_step(self, iterations: int) -> int:
        if self.alternate:
            return iterations % 2
        return self.mode

    def invert(self, data: DispersionData, model: LayeredModel,
               reference: LayeredModel, damping: Sequence[float],
               likelihood: Callable, posterior: bool = False,
               initial_predictions: Optional[str] = 'initial_predictions.txt') -> bool:
        """
        Invert dispersion data, updating model in place

        Parameters:
        -----------
        data : DispersionData
            Observations with the target range selected
        model : LayeredModel
            Starting model, holds the inverted model on return
        reference : LayeredModel
            Prior mean model
        damping : sequence of 4 floats
            Prior standard deviations for [rho, vs, xi, vpvs]
        likelihood : callable
            likelihood(data, model, reference, damping, posterior) returning
            (like, G, dLdp, residuals, Cd)
        posterior : bool, default=False
            Ignore the data and sample the prior only
        initial_predictions : str, optional
            File for the predictions of the starting model, None to skip

        Returns:
        --------
        success : bool
        """
        print("=========== 1D Love Wave Dispersion Inversion ============")

        epsilon = [self.epsilon, self.epsilon]
        self.misfit_history = []
        self.epsilon_trace = []
        self.events = []

        like, G, dLdp, residuals, Cd = likelihood(data, model, reference, damping, posterior)
        print(f"init: {like:16.9e}")
        self.misfit_history.append(like)
        last_like = like

        if initial_predictions is not None:
            try:
                data.save_predictions(initial_predictions)
            except OSError as e:
                warnings.warn(f"Failed to save initial predictions: {e}")

        # G is sized by the likelihood
        nparam = G.shape[1]

        Cm = np.zeros(nparam)
        initialize_Cm(model, damping, Cm)

        model_mask = np.zeros(model.params.size, dtype=int)
        model_v = np.zeros(nparam)
        model_v_proposed = np.zeros(nparam)
        model_0 = np.zeros(nparam)

        copy_to_vector(reference, model_0, model_mask)

        iterations = 0
        while iterations < self.max_iterations:

            m = self.select_step(iterations)
            step = self.steps[m]

            valid = False
            while not valid:
                copy_to_vector(model, model_v, model_mask)
                self.epsilon_trace.append((m, epsilon[m]))

                if not step.compute_step(epsilon[m], Cd, Cm, residuals, G, dLdp,
                                         model_mask, model_v, model_0, model_v_proposed):
                    self.final_epsilon = epsilon
                    raise StepComputationFailed(iterations, m, step.name)

                valid = validate(model_v_proposed, model_mask, self.prior_min, self.prior_max)
                if not valid:
                    epsilon[m] *= 0.5
                    if epsilon[m] < self.epsilon_min:
                        break

            if not valid:
                warnings.warn(f"Iteration {iterations}: prior bounds could not be satisfied")
                print(f"{iterations:4d}: Exiting")
                self.events.append('prior-exit')
                break

            copy_to_model(model_v_proposed, model)

            # Recompute likelihood
            last_like = like
            like, G, dLdp, residuals, Cd = likelihood(data, model, reference, damping, posterior)

            if like > last_like:

                # Restore the last accepted model either way
                copy_to_model(model_v, model)

                if epsilon[m] < self.epsilon_min:
                    print(f"{iterations:4d}: Exiting")
                    self.events.append('exit')
                    like, G, dLdp, residuals, Cd = likelihood(data, model, reference,
                                                              damping, posterior)
                    break

                print(f"{iterations:4d}: Backtracking")
                self.events.append('backtrack')

                epsilon[m] *= 0.5
                like, G, dLdp, residuals, Cd = likelihood(data, model, reference, damping, posterior)

            else:
                print(f"{iterations:4d}: {like:16.9e} {epsilon[m]:16.9e}")
                self.events.append('accept')
                self.misfit_history.append(like)

                iterations += 1

        self.final_epsilon = epsilon
        print("================= Inversion finished =================")
        return True


# Convenience function
def invdispL(freq: np.ndarray, observed: np.ndarray, sigma: np.ndarray,
             initial_model: LayeredModel, damping: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
             fmin: float = 1.0 / 40.0, fmax: float = 1.0 / 2.0,
             n_iterations: int = 5, epsilon: float = 1.0, mode: int = 0,
             alternate: bool = True, posterior: bool = False,
             initial_predictions: Optional[str] = None,
             **kwargs) -> Tuple[LayeredModel, np.ndarray]:
    """
    Love-wave dispersion curve inversion

    Parameters:
    -----------
    freq : Frequency array (Hz)
    observed : Observed phase velocity (m/s)
    sigma : Observation error (m/s)
    initial_model : Starting model, also used as prior mean
    damping : Prior standard deviations [rho, vs, xi, vpvs]
    fmin, fmax : Target frequency range
    n_iterations : Number of iterations
    **kwargs : passed on to LoveLikelihood

    Returns:
    --------
    inverted_model : Inverted model
    predicted : Predicted phase velocity at the target frequencies
    """
    data = DispersionData(fmin, fmax)
    data.set_observations(freq, observed, sigma)
    data.initialise_target()

    reference = ReferenceModel(initial_model.copy())
    inverter = LoveInverter(epsilon=epsilon, max_iterations=n_iterations,
                            mode=mode, alternate=alternate)
    inverter.invert(data, reference.model, reference.reference, damping,
                    LoveLikelihood(**kwargs), posterior=posterior,
                    initial_predictions=initial_predictions)

    return reference.model, data.pred[data.ffirst:data.flast + 1]
