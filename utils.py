"""
Layered model utilities: parameter vectors, masks, prior covariance and bounds
"""

import numpy as np
from typing import Optional, Sequence, Tuple, Union

# Parameter order within a layer
RHO, VS, XI, VPVS = 0, 1, 2, 3
PARAMETER_NAMES = ('rho', 'vs', 'xi', 'vpvs')
NPARAMETERS = len(PARAMETER_NAMES)

# Hard prior bounds [rho (kg/m^3), vs (m/s), xi, vp/vs]
PRIOR_MIN = np.array([0.1e3, 0.5e3, 0.5, 1.0])
PRIOR_MAX = np.array([8.0e3, 10.0e3, 1.5, 2.5])

FIXED = -1


class LayeredModel:
    """
    Layered earth model for Love-wave inversion

    Each layer carries [rho, vs, xi, vpvs] with vs the vertically polarised
    shear velocity and xi = (Vsh/Vsv)^2. Thickness is never inverted and the
    last layer is treated as a half-space.
    """

    def __init__(self, thickness: np.ndarray, params: np.ndarray,
                 free: Optional[np.ndarray] = None):
        """
        Parameters:
        -----------
        thickness : np.ndarray
            Layer thickness (m), shape (n_layers,)
        params : np.ndarray
            Layer parameters [rho, vs, xi, vpvs], shape (n_layers, 4)
        free : np.ndarray, optional
            Boolean table of optimised slots, shape (n_layers, 4). By default
            rho, vs and xi are free and vpvs is fixed, Love waves being
            insensitive to Vp.
        """
        self.thickness = np.asarray(thickness, dtype=float).copy()
        self.params = np.array(params, dtype=float, ndmin=2)

        if self.params.shape != (len(self.thickness), NPARAMETERS):
            raise ValueError("params must have shape (n_layers, 4)")

        if free is None:
            free = np.ones(self.params.shape, dtype=bool)
            free[:, VPVS] = False
        self.free = np.array(free, dtype=bool, ndmin=2)

        if self.free.shape != self.params.shape:
            raise ValueError("free must have the same shape as params")

    @property
    def nlayers(self) -> int:
        return len(self.thickness)

    @property
    def rho(self) -> np.ndarray:
        return self.params[:, RHO]

    @property
    def vs(self) -> np.ndarray:
        return self.params[:, VS]

    @property
    def xi(self) -> np.ndarray:
        return self.params[:, XI]

    @property
    def vpvs(self) -> np.ndarray:
        return self.params[:, VPVS]

    def copy(self) -> 'LayeredModel':
        return LayeredModel(self.thickness, self.params, self.free)

    def velocity_model(self, wave: str = 'love') -> Tuple:
        """
        Convert to the (thickness, Vp, Vs, density) tuple used by disba

        Units are converted to km, km/s and g/cm^3. For Love waves the SH
        velocity sqrt(xi) * vs is used.
        """
        vs = self.vs.copy()
        if wave.lower() == 'love':
            vs = vs * np.sqrt(self.xi)
        vp = self.vs * self.vpvs

        thickness = self.thickness / 1.0e3
        vp = vp / 1.0e3
        vs = vs / 1.0e3
        density = self.rho / 1.0e3

        # Ensure bottom layer is half-space
        if len(thickness) == 1 or thickness[-1] > 0:
            thickness = np.append(thickness, 0.0)
            vp = np.append(vp, vp[-1])
            vs = np.append(vs, vs[-1])
            density = np.append(density, density[-1])

        return thickness, vp, vs, density

    def save(self, filename: str) -> None:
        """Write the model as whitespace separated columns"""
        table = np.column_stack([self.thickness, self.params, self.free.astype(int)])
        np.savetxt(filename, table,
                   fmt=['%.6f'] * (1 + NPARAMETERS) + ['%d'] * NPARAMETERS,
                   header='thickness rho vs xi vpvs free_rho free_vs free_xi free_vpvs')

    @classmethod
    def load(cls, filename: str) -> 'LayeredModel':
        table = np.loadtxt(filename, ndmin=2)
        if table.shape[1] == 1 + NPARAMETERS:
            return cls(table[:, 0], table[:, 1:])
        if table.shape[1] == 1 + 2 * NPARAMETERS:
            return cls(table[:, 0], table[:, 1:1 + NPARAMETERS],
                       table[:, 1 + NPARAMETERS:] != 0)
        raise ValueError(f"{filename}: expected 5 or 9 columns, got {table.shape[1]}")

    def __repr__(self) -> str:
        return f"LayeredModel(nlayers={self.nlayers}, nfree={count_free(self)})"


class ReferenceModel:
    """Starting model and prior mean model of an inversion"""

    def __init__(self, model: LayeredModel, reference: Optional[LayeredModel] = None):
        self.model = model
        self.reference = model.copy() if reference is None else reference

    @classmethod
    def load(cls, filename: str) -> 'ReferenceModel':
        return cls(LayeredModel.load(filename))


def create_layered_model(thickness: np.ndarray,
                         rho: Union[float, np.ndarray],
                         vs: Union[float, np.ndarray],
                         xi: Union[float, np.ndarray] = 1.0,
                         vpvs: Union[float, np.ndarray] = 1.75,
                         free: Optional[Sequence[bool]] = None) -> LayeredModel:
    """
    Create a layered model

    Parameters:
    -----------
    thickness : np.ndarray
        Layer thickness (m)
    rho : float or np.ndarray
        Density (kg/m^3)
    vs : float or np.ndarray
        Shear velocity Vsv (m/s)
    xi : float or np.ndarray, default=1.0
        Radial anisotropy (Vsh/Vsv)^2
    vpvs : float or np.ndarray, default=1.75
        Vp/Vs ratio
    free : sequence of bool, optional
        Which of [rho, vs, xi, vpvs] are optimised in every layer

    Returns:
    --------
    model : LayeredModel
    """
    thickness = np.atleast_1d(np.asarray(thickness, dtype=float))
    n = len(thickness)

    columns = []
    for value in (rho, vs, xi, vpvs):
        if np.isscalar(value):
            value = np.full(n, value, dtype=float)
        columns.append(np.asarray(value, dtype=float))

    free_table = None
    if free is not None:
        free_table = np.tile(np.asarray(free, dtype=bool), (n, 1))

    return LayeredModel(thickness, np.column_stack(columns), free_table)


def count_free(model: LayeredModel) -> int:
    return int(np.count_nonzero(model.free))


def copy_to_vector(model: LayeredModel,
                   model_v: Optional[np.ndarray] = None,
                   model_mask: Optional[np.ndarray] = None) -> Tuple[np.ndarray, np.ndarray]:
    """
    Flatten the free parameters of a model into a dense vector

    The mask gets one entry per structural slot (layer-major): the parameter
    index for a free slot, -1 for a fixed one. Arrays passed in are filled in
    place.

    Returns:
    --------
    model_v : np.ndarray
        Free parameter values in canonical order
    model_mask : np.ndarray
        Structural mask
    """
    nfree = count_free(model)

    if model_v is None:
        model_v = np.zeros(nfree)
    elif model_v.shape != (nfree,):
        raise ValueError(f"model vector has length {model_v.size}, expected {nfree}")

    if model_mask is None:
        model_mask = np.zeros(model.params.size, dtype=int)
    elif model_mask.shape != (model.params.size,):
        raise ValueError("mask does not match the model structure")

    kinds = np.tile(np.arange(NPARAMETERS), model.nlayers)
    free = model.free.ravel()
    model_mask[:] = np.where(free, kinds, FIXED)
    model_v[:] = model.params.ravel()[free]

    return model_v, model_mask


def copy_to_model(model_v: np.ndarray, model: LayeredModel) -> LayeredModel:
    """Write a dense free parameter vector back into the model, fixed slots untouched"""
    free = model.free.ravel()
    if len(model_v) != np.count_nonzero(free):
        raise ValueError(f"model vector has length {len(model_v)}, "
                         f"model has {np.count_nonzero(free)} free parameters")

    flat = model.params.ravel()
    flat[free] = model_v
    model.params[:] = flat.reshape(model.params.shape)
    return model


def parameter_kinds(model_mask: np.ndarray) -> np.ndarray:
    """Parameter index of each entry of a free parameter vector"""
    return model_mask[model_mask != FIXED]


def initialize_Cm(model: LayeredModel, damping: Sequence[float],
                  Cm: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Diagonal model covariance from per-parameter standard deviations

    Cm holds variances: Cm[i] = damping[kind]**2. A zero damping value puts
    no prior on that parameter type.

    Parameters:
    -----------
    model : LayeredModel
        Model defining the free parameters
    damping : sequence of 4 floats
        Standard deviations for [rho, vs, xi, vpvs]
    Cm : np.ndarray, optional
        Output array, filled in place

    Returns:
    --------
    Cm : np.ndarray
    """
    damping = np.asarray(damping, dtype=float)
    if damping.shape != (NPARAMETERS,):
        raise ValueError("damping needs one value per parameter type")
    if np.any(damping < 0.0):
        raise ValueError("damping values must be 0 or greater")

    _, mask = copy_to_vector(model)
    kinds = parameter_kinds(mask)

    if Cm is None:
        Cm = np.zeros(len(kinds))
    Cm[:] = damping[kinds] ** 2
    return Cm


def inverse_Cm(Cm: np.ndarray) -> np.ndarray:
    """Diagonal of Cm^-1, zero where there is no prior"""
    Cm_inv = np.zeros_like(Cm, dtype=float)
    np.divide(1.0, Cm, out=Cm_inv, where=Cm > 0)
    return Cm_inv


def validate(model_v: np.ndarray, model_mask: np.ndarray,
             prior_min: Sequence[float] = PRIOR_MIN,
             prior_max: Sequence[float] = PRIOR_MAX) -> bool:
    """Check every free parameter lies within its prior bounds"""
    kinds = parameter_kinds(model_mask)
    if len(kinds) != len(model_v):
        raise ValueError("model vector does not match the mask")

    lower = np.asarray(prior_min, dtype=float)[kinds]
    upper = np.asarray(prior_max, dtype=float)[kinds]

    # NaN fails both comparisons
    return bool(np.all((model_v >= lower) & (model_v <= upper)))


def calculate_rms_misfit(observed: np.ndarray, predicted: np.ndarray,
                         errors: np.ndarray = None) -> float:
    """
    Compute the RMS misfit

    Parameters:
    -----------
    observed : observed values
    predicted : predicted values
    errors : errors (used for weighting)

    Returns:
    --------
    rms : RMS misfit
    """
    valid_indices = ~np.isnan(observed) & ~np.isnan(predicted)
    if np.sum(valid_indices) == 0:
        return float('inf')  # no valid data points

    obs_valid = observed[valid_indices]
    pred_valid = predicted[valid_indices]

    if errors is not None:
        err_valid = errors[valid_indices]
        weights = 1.0 / err_valid**2
        misfit = np.sqrt(np.sum(weights * (obs_valid - pred_valid)**2) / np.sum(weights))
    else:
        misfit = np.sqrt(np.mean((obs_valid - pred_valid)**2))

    return misfit
