#!/usr/bin/env python
"""multirbm command-line interface."""

import argparse
import sys
from pathlib import Path


def _load_setup(config_path):
    """Load config and build its Hilbert space; None on a missing file."""
    from multirbm.config import load_config
    from multirbm.hilbert import hilbert_from_config

    config_path = Path(config_path)
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}")
        return None, None

    cfg = load_config(config_path)
    return cfg, hilbert_from_config(cfg)


def _load_model(cfg, hilbert, model_path):
    from multirbm.model import MultivalRBM
    from multirbm.utils import resolve_device, resolve_dtype

    return MultivalRBM.from_file(
        hilbert,
        model_path,
        dtype=resolve_dtype(cfg.get("dtype", "complex128")),
        device=resolve_device(cfg.get("device", "cpu")),
    )


def cmd_new(args):
    """Write a starter config file."""
    from multirbm.config import write_config_template

    try:
        path = write_config_template(args.config)
    except FileExistsError as e:
        print(f"Error: {e}")
        return 1
    print(f"Config template written to: {path}")
    return 0


def cmd_init(args):
    """Create a randomly initialized model and save it."""
    from multirbm.model import MultivalRBM

    try:
        cfg, hilbert = _load_setup(args.config)
        if cfg is None:
            return 1
        print(f"Hilbert space: {hilbert}")
        model = MultivalRBM.from_config(cfg, hilbert)
    except (KeyError, TypeError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    model.save(args.out)
    print(f"Model saved to: {args.out}")
    print(f"  Parameters: {model.npar}")
    return 0


def cmd_info(args):
    """Print the structure of a saved model."""
    from multirbm.errors import StructuralMismatch

    model_path = Path(args.model)
    if not model_path.exists():
        print(f"Error: Model not found: {model_path}")
        return 1

    try:
        cfg, hilbert = _load_setup(args.config)
        if cfg is None:
            return 1
        model = _load_model(cfg, hilbert, model_path)
    except (StructuralMismatch, KeyError, TypeError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    print("=" * 60)
    print(f"Model:          {model_path}")
    print(f"  Nvisible:     {model.nv}")
    print(f"  Nhidden:      {model.nh}")
    print(f"  LocalSize:    {model.ls}")
    print(f"  LocalStates:  {list(hilbert.local_states)}")
    print(f"  VisibleBias:  {model.usea}")
    print(f"  HiddenBias:   {model.useb}")
    print(f"  Parameters:   {model.npar}")
    print(f"  Holomorphic:  {model.is_holomorphic}")
    return 0


def cmd_logval(args):
    """Print log psi for a configuration given on the command line."""
    from multirbm.errors import InvalidConfigurationValue, StructuralMismatch

    try:
        state = [float(x) for x in args.state.split(",") if x.strip()]
    except ValueError:
        print(f"Error: Could not parse state: {args.state!r}")
        return 1

    try:
        cfg, hilbert = _load_setup(args.config)
        if cfg is None:
            return 1
        model = _load_model(cfg, hilbert, args.model)
        value = complex(model.log_val(state))
    except (
        StructuralMismatch,
        InvalidConfigurationValue,
        FileNotFoundError,
        TypeError,
        ValueError,
    ) as e:
        print(f"Error: {e}")
        return 1

    print(f"log psi = {value.real:.12g} {value.imag:+.12g}j")
    return 0


def cmd_check(args):
    """Check incremental/batched evaluation against full recomputation."""
    from multirbm.errors import StructuralMismatch
    from multirbm.model import MultivalRBM
    from multirbm.run_utils import RunLogger, save_metrics
    from multirbm.tester import AnsatzTester

    try:
        cfg, hilbert = _load_setup(args.config)
        if cfg is None:
            return 1
    except (KeyError, TypeError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    check_cfg = cfg.get("check", {})
    log_path = args.log or Path(args.metrics).with_suffix(".log")

    with RunLogger(log_path):
        try:
            if args.model:
                model = _load_model(cfg, hilbert, args.model)
            else:
                model = MultivalRBM.from_config(cfg, hilbert)
        except (StructuralMismatch, FileNotFoundError, TypeError, ValueError) as e:
            print(f"Error: {e}")
            return 1

        tester = AnsatzTester(
            model,
            seed=check_cfg.get("seed", 0),
            max_changes=check_cfg.get("max_changes", 2),
            n_candidates=check_cfg.get("n_candidates", 4),
        )
        metrics = tester.run(
            n_samples=args.samples or check_cfg.get("n_samples", 100),
            tolerance=check_cfg.get("tolerance", 1e-8),
        )

        print("\n" + "=" * 60)
        print("CONSISTENCY CHECK")
        print("=" * 60)
        for key, value in metrics.items():
            print(f"  {key}: {value}")

    save_metrics(metrics, args.metrics)
    print(f"\nMetrics saved to: {args.metrics}")
    return 0 if metrics["passed"] else 2


def cmd_plot(args):
    """Draw the weights of a saved model."""
    from multirbm.errors import StructuralMismatch

    try:
        cfg, hilbert = _load_setup(args.config)
        if cfg is None:
            return 1
        model = _load_model(cfg, hilbert, args.model)
    except (StructuralMismatch, FileNotFoundError, TypeError, ValueError) as e:
        print(f"Error: {e}")
        return 1

    model.draw_weights(save_path=args.save, show=args.save is None)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="multirbm - multi-valued RBM wavefunction ansatz",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # new command
    new_parser = subparsers.add_parser(
        "new",
        help="Write a starter config file",
    )
    new_parser.add_argument(
        "config",
        type=str,
        help="Path for the new config file",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Create and save a randomly initialized model",
    )
    init_parser.add_argument("--config", "-c", type=str, required=True, help="Path to config file")
    init_parser.add_argument("--out", "-o", type=str, required=True, help="Output model path (.json)")

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show the structure of a saved model",
    )
    info_parser.add_argument("--config", "-c", type=str, required=True, help="Path to config file")
    info_parser.add_argument("--model", "-m", type=str, required=True, help="Path to saved model")

    # logval command
    logval_parser = subparsers.add_parser(
        "logval",
        help="Evaluate log psi for one configuration",
    )
    logval_parser.add_argument("--config", "-c", type=str, required=True, help="Path to config file")
    logval_parser.add_argument("--model", "-m", type=str, required=True, help="Path to saved model")
    logval_parser.add_argument(
        "--state", "-s",
        type=str,
        required=True,
        help="Comma-separated site values, e.g. 1,-1,1,-1",
    )

    # check command
    check_parser = subparsers.add_parser(
        "check",
        help="Check fast updates against full recomputation",
    )
    check_parser.add_argument("--config", "-c", type=str, required=True, help="Path to config file")
    check_parser.add_argument(
        "--model", "-m",
        type=str,
        default=None,
        help="Saved model (default: fresh model from config)",
    )
    check_parser.add_argument("--samples", "-n", type=int, default=None, help="Number of configurations")
    check_parser.add_argument("--metrics", type=str, default="check_metrics.json", help="Metrics output path")
    check_parser.add_argument("--log", type=str, default=None, help="Log file (default: next to metrics)")

    # plot command
    plot_parser = subparsers.add_parser(
        "plot",
        help="Draw the weight matrix of a saved model",
    )
    plot_parser.add_argument("--config", "-c", type=str, required=True, help="Path to config file")
    plot_parser.add_argument("--model", "-m", type=str, required=True, help="Path to saved model")
    plot_parser.add_argument("--save", type=str, default=None, help="Save figure instead of showing it")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "new":
        return cmd_new(args)
    elif args.command == "init":
        return cmd_init(args)
    elif args.command == "info":
        return cmd_info(args)
    elif args.command == "logval":
        return cmd_logval(args)
    elif args.command == "check":
        return cmd_check(args)
    elif args.command == "plot":
        return cmd_plot(args)

    return 0


if __name__ == "__main__":
    sys.exit(main())
