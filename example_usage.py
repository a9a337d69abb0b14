"""
Example: Love-wave dispersion curve inversion on synthetic data
"""
# %%
import numpy as np
import matplotlib.pyplot as plt
from likelihood import love_phase_velocity
from love_inversion import invdispL
from utils import create_layered_model, calculate_rms_misfit


def example_1d_inversion():
    """1D inversion example on a synthetic three layer crust"""

    print("Starting 1D Love-wave dispersion inversion example...")

    freq = np.linspace(1.0 / 40.0, 1.0 / 4.0, 20)

    # True model (thickness in m, half-space last)
    thickness = np.array([2.0e3, 10.0e3, 0.0])
    true_model = create_layered_model(thickness,
                                      rho=np.array([2500.0, 2700.0, 3000.0]),
                                      vs=np.array([2300.0, 3500.0, 4500.0]),
                                      xi=np.array([1.0, 1.05, 1.0]))
    true_phv = love_phase_velocity(freq, true_model)

    # Add noise
    noise_level = 0.01
    rng = np.random.default_rng(0)
    observed = true_phv * (1 + noise_level * rng.standard_normal(len(freq)))
    sigma = np.full_like(freq, noise_level * np.mean(true_phv))

    # Initial model: homogeneous crust over the same half-space
    initial_model = create_layered_model(thickness,
                                         rho=np.array([2600.0, 2600.0, 3000.0]),
                                         vs=np.array([3000.0, 3000.0, 4500.0]))

    inverted_model, predicted = invdispL(
        freq, observed, sigma, initial_model,
        damping=(0.5e3, 0.5e3, 0.05, 0.05),
        fmin=freq[0], fmax=freq[-1],
        n_iterations=10, epsilon=1.0)

    rms = calculate_rms_misfit(observed, predicted, sigma)
    print(f"RMS misfit: {rms:.4f} m/s")

    plot_results(freq, observed, true_phv, predicted,
                 true_model, initial_model, inverted_model)


def plot_results(freq, observed, true_phv, predicted,
                 true_model, initial_model, inverted_model):
    """Plot inversion results"""

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=(12, 5))

    ax1.plot(freq, true_phv, 'k-', linewidth=2, label='True Model')
    ax1.plot(freq, observed, 'ro', markersize=6, label='Observed Data')
    ax1.plot(freq, predicted, 'b--', linewidth=2, label='Inverted Result')
    ax1.set_xlabel('Frequency (Hz)')
    ax1.set_ylabel('Love Phase Velocity (m/s)')
    ax1.legend()
    ax1.grid(True, alpha=0.3)
    ax1.set_title('Dispersion Curve Fitting')

    plot_velocity_models(ax2, true_model, initial_model, inverted_model)
    ax2.set_title('Velocity Model Comparison')

    plt.tight_layout()
    plt.show()


def plot_velocity_models(ax, true_model, initial_model, inverted_model, halfspace=10.0e3):
    """Plot Vs profiles, the half-space drawn over an extra halfspace metres"""

    for model, style, label in ((true_model, 'k-', 'True Model'),
                                (initial_model, 'r--', 'Initial Model'),
                                (inverted_model, 'b-', 'Inverted Model')):
        thickness = model.thickness.copy()
        thickness[-1] = halfspace
        depths = np.insert(np.cumsum(thickness), 0, 0) / 1.0e3

        vs = np.repeat(model.vs, 2)
        depths_plot = np.repeat(depths, 2)[1:-1]
        ax.plot(vs, depths_plot, style, linewidth=2, label=label)

    ax.set_xlabel('S-wave Velocity (m/s)')
    ax.set_ylabel('Depth (km)')
    ax.invert_yaxis()  # Depth increases downward
    ax.legend()
    ax.grid(True, alpha=0.3)
# %%
if __name__ == "__main__":
    example_1d_inversion()
# %%
