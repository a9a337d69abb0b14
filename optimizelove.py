"""
Command line front end of the Love-wave dispersion inversion
"""

import argparse
import sys
import warnings
from typing import Optional, Sequence

import numpy as np

from likelihood import DispersionData, LoveLikelihood
from love_inversion import LoveInverter, StepComputationFailed
from utils import ReferenceModel, calculate_rms_misfit


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Invert Love-wave phase dispersion for a layered model")
    ap.add_argument("-i", "--input", required=True, help="observed dispersion (frequency velocity [sigma])")
    ap.add_argument("-r", "--reference", required=True, help="reference model file")
    ap.add_argument("-o", "--output", required=True, help="output prefix")

    ap.add_argument("-f", "--fmin", type=float, default=1.0 / 40.0, help="minimum frequency (Hz)")
    ap.add_argument("-F", "--fmax", type=float, default=1.0 / 2.0, help="maximum frequency (Hz)")

    ap.add_argument("-R", "--sigma-rho", type=float, default=0.0, help="density prior std-dev")
    ap.add_argument("-V", "--sigma-vs", type=float, default=0.0, help="Vs prior std-dev")
    ap.add_argument("-X", "--sigma-xi", type=float, default=0.0, help="xi prior std-dev")
    ap.add_argument("-S", "--sigma-vpvs", type=float, default=0.0, help="Vp/Vs prior std-dev")

    ap.add_argument("-s", "--scale", type=float, default=1.0e-4, help="Laguerre scaling")
    ap.add_argument("-p", "--order", type=int, default=5, help="element order")
    ap.add_argument("-b", "--boundaryorder", type=int, default=5, help="boundary element order")
    ap.add_argument("-t", "--threshold", type=float, default=0.0, help="solver threshold")
    ap.add_argument("-P", "--high-order", type=int, default=5, help="high element order")

    ap.add_argument("-N", "--nsteps", type=int, default=5, help="number of iterations")
    ap.add_argument("-e", "--epsilon", type=float, default=1.0, help="initial step size")
    ap.add_argument("-Q", "--posterior", action="store_true", help="ignore the data, prior only")
    ap.add_argument("-M", "--mode", type=int, default=0,
                    help="0 (simple gradient desc.) or 1 (q-newton)")
    ap.add_argument("--no-alternate", dest="alternate", action="store_false",
                    help="use --mode for every iteration instead of alternating")

    args = ap.parse_args(argv)

    for name, value in (("rho", args.sigma_rho), ("vs", args.sigma_vs),
                        ("xi", args.sigma_xi), ("vp/vs", args.sigma_vpvs)):
        if value < 0.0:
            ap.error(f"{name} std-dev must be 0 or greater")
    if args.scale <= 0.0:
        ap.error("scale must be positive")
    if args.order < 1:
        ap.error("order must be 1 or greater")
    if args.boundaryorder < 1:
        ap.error("boundary order must be 1 or greater")
    if args.high_order < 1:
        ap.error("high order must be 1 or greater")
    if args.nsteps < 1:
        ap.error("need at least one iteration")
    if args.epsilon <= 0.0:
        ap.error("epsilon must be positive")
    if args.mode not in (0, 1):
        ap.error("mode must be 0 (simple gradient desc.) or 1 (q-newton)")
    if args.fmin <= 0.0 or args.fmax <= args.fmin:
        ap.error("need 0 < fmin < fmax")

    return args


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    damping = [args.sigma_rho, args.sigma_vs, args.sigma_xi, args.sigma_vpvs]

    data = DispersionData(args.fmin, args.fmax)
    try:
        data.load(args.input)
        print(f"Desired range: {args.fmin:10.6f} {args.fmax:10.6f}")
        data.initialise_target()
    except (OSError, ValueError) as e:
        print(f"error: failed to load data from {args.input}: {e}", file=sys.stderr)
        return 1
    print(f"Actual  range: {data.freq[data.ffirst]:10.6f} {data.freq[data.flast]:10.6f}")

    try:
        reference = ReferenceModel.load(args.reference)
    except (OSError, ValueError) as e:
        print(f"error: failed to load model from {args.reference}: {e}", file=sys.stderr)
        return 1

    try:
        reference.model.save(f"{args.output}.initial-model")
    except OSError as e:
        print(f"error: failed to save initial model: {e}", file=sys.stderr)
        return 1

    likelihood = LoveLikelihood(threshold=args.threshold, order=args.order,
                                high_order=args.high_order,
                                boundary_order=args.boundaryorder,
                                scale=args.scale)
    inverter = LoveInverter(epsilon=args.epsilon, max_iterations=args.nsteps,
                            mode=args.mode, alternate=args.alternate)

    try:
        success = inverter.invert(data, reference.model, reference.reference, damping,
                                  likelihood, posterior=args.posterior)
    except StepComputationFailed as e:
        print(f"error: failed to invert: {e}", file=sys.stderr)
        return 1
    if not success:
        print("error: failed to invert", file=sys.stderr)
        return 1

    try:
        reference.model.save(f"{args.output}.model")
    except OSError as e:
        print(f"error: failed to save model: {e}", file=sys.stderr)
        return 1

    try:
        data.save_predictions(f"{args.output}.pred")
    except OSError as e:
        warnings.warn(f"Failed to save predictions: {e}")

    s = slice(data.ffirst, data.flast + 1)
    rms = calculate_rms_misfit(data.velocity[s], data.pred[s], data.sigma[s])
    if np.isfinite(rms):
        print(f"RMS misfit: {rms:.4f} m/s")

    return 0


if __name__ == "__main__":
    sys.exit(main())
