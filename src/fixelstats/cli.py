"""
Command-line interface for FixelStats.

This module provides the CLI entry point for running fixel-based
analyses with connectivity-based fixel enhancement.
"""

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import Any, Dict, List, Optional

from fixelstats import __version__
from fixelstats.config import Config, create_default_config
from fixelstats.pipeline import FixelCFEPipeline

logger = logging.getLogger(__name__)


class Colors:
    """ANSI color codes for terminal output."""
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD = '\033[1m'
    UNDERLINE = '\033[4m'
    END = '\033[0m'


class ColoredHelpFormatter(argparse.RawDescriptionHelpFormatter):
    """Custom formatter with colored section headers."""

    def __init__(self, prog, indent_increment=2, max_help_position=40, width=100):
        super().__init__(prog, indent_increment, max_help_position, width)

    def _format_usage(self, usage, actions, groups, prefix):
        if prefix is None:
            prefix = f'{Colors.BOLD}Usage:{Colors.END} '
        return super()._format_usage(usage, actions, groups, prefix)

    def start_section(self, heading):
        if heading:
            heading = f'{Colors.BOLD}{Colors.CYAN}{heading}{Colors.END}'
        super().start_section(heading)


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""

    description = textwrap.dedent(f"""
    {Colors.BOLD}{Colors.GREEN}╔══════════════════════════════════════════════════════════════════════════════╗
    ║                     FixelStats v{__version__:<57}║
    ║           Fixel-Based Analysis with Connectivity-based Fixel Enhancement        ║
    ╚══════════════════════════════════════════════════════════════════════════════╝{Colors.END}

    {Colors.BOLD}Description:{Colors.END}
      FixelStats performs whole-brain fixel-based statistics. Fixel-fixel
      connectivity derived from a tractogram is used to smooth the fixel data
      and to enhance the t statistic (CFE); family-wise error is controlled by
      non-parametric permutation testing.

    {Colors.BOLD}Workflow:{Colors.END}
      1. Load the template fixel directory, subject data, design and contrasts
      2. Compute fixel-fixel connectivity from the tractogram
      3. Smooth fixel data along fibre tracts
      4. Fit the GLM and save betas, effect sizes and standard deviation
      5. Enhance the t statistic with CFE
      6. Permutation test: FWE-corrected and uncorrected p-values
    """)

    epilog = textwrap.dedent(f"""
    {Colors.BOLD}{Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}
    {Colors.BOLD}EXAMPLES{Colors.END}
    {Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}

    {Colors.BOLD}Configuration File:{Colors.END}

      {Colors.YELLOW}# Generate default configuration{Colors.END}
      fixelstats --init-config config.yaml

      {Colors.YELLOW}# Run analysis with config file{Colors.END}
      fixelstats template/fd files.txt design.txt contrast.txt tracks.tck stats_fd \\
          -c config.yaml

    {Colors.BOLD}Group Comparison:{Colors.END}

      {Colors.YELLOW}# Two groups, 5000 permutations on 8 cores{Colors.END}
      fixelstats template/fd files.txt design.txt contrast.txt tracks.tck stats_fd \\
          --n-jobs 8

      {Colors.YELLOW}# Design built from a participants table{Colors.END}
      fixelstats template/fd files.txt participants.tsv contrast.txt tracks.tck stats_fd \\
          --regressors group age --categorical-regressors group

    {Colors.BOLD}Fixel-wise Covariate:{Colors.END}

      {Colors.YELLOW}# Add a fixel-wise design matrix column (contrast gains one column){Colors.END}
      fixelstats template/fd files.txt design.txt contrast.txt tracks.tck stats_fd \\
          --column log_fc_files.txt

    {Colors.BOLD}Nonstationarity Adjustment:{Colors.END}

      fixelstats template/fd files.txt design.txt contrast.txt tracks.tck stats_fd \\
          --nonstationary --nperms-nonstationary 1000

    {Colors.BOLD}{Colors.GREEN}═══════════════════════════════════════════════════════════════════════════════{Colors.END}
    """)

    parser = argparse.ArgumentParser(
        prog="fixelstats",
        description=description,
        epilog=epilog,
        formatter_class=ColoredHelpFormatter,
        add_help=False,
    )

    # =========================================================================
    # REQUIRED ARGUMENTS
    # =========================================================================
    required = parser.add_argument_group(
        f'{Colors.BOLD}Required Arguments{Colors.END}'
    )

    required.add_argument(
        "fixel_dir",
        type=Path,
        nargs="?",
        metavar="FIXEL_DIR",
        help="Template fixel directory containing the index, directions and subject fixel data files.",
    )

    required.add_argument(
        "subjects",
        type=Path,
        nargs="?",
        metavar="SUBJECTS",
        help="Text file listing the subject fixel data files (relative to FIXEL_DIR), "
             "one per line, in the same order as the design matrix rows.",
    )

    required.add_argument(
        "design",
        type=Path,
        nargs="?",
        metavar="DESIGN",
        help="Design matrix text file, or participants table (.tsv/.csv) used with --regressors.",
    )

    required.add_argument(
        "contrast",
        type=Path,
        nargs="?",
        metavar="CONTRAST",
        help="Contrast matrix text file, one contrast per row.",
    )

    required.add_argument(
        "tracks",
        type=Path,
        nargs="?",
        metavar="TRACKS",
        help="Tractogram used to compute fixel-fixel connectivity (e.g. .tck).",
    )

    required.add_argument(
        "output_dir",
        type=Path,
        nargs="?",
        metavar="OUTPUT_DIR",
        help="Output fixel directory.",
    )

    # =========================================================================
    # GENERAL OPTIONS
    # =========================================================================
    general = parser.add_argument_group(
        f'{Colors.BOLD}General Options{Colors.END}'
    )

    general.add_argument(
        "-h", "--help",
        action="help",
        default=argparse.SUPPRESS,
        help="Show this help message and exit.",
    )

    general.add_argument(
        "--version",
        action="version",
        version=f"fixelstats {__version__}",
        help="Show program version and exit.",
    )

    verbosity = general.add_mutually_exclusive_group()

    verbosity.add_argument(
        "-v", "--verbose",
        action="count",
        default=None,
        help="Increase verbosity (-v: info, -vv: debug). Default: info.",
    )

    verbosity.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only report warnings and errors; no progress bars.",
    )

    general.add_argument(
        "-c", "--config",
        type=Path,
        metavar="FILE",
        help="Path to configuration file (.json, .yaml, or .yml). "
             "CLI arguments override config file settings.",
    )

    general.add_argument(
        "--init-config",
        type=Path,
        metavar="FILE",
        help="Generate a default configuration file and exit.",
    )

    # =========================================================================
    # CFE OPTIONS
    # =========================================================================
    cfe = parser.add_argument_group(
        f'{Colors.BOLD}CFE Options{Colors.END}',
        "Connectivity-based fixel enhancement parameters."
    )

    cfe.add_argument(
        "--cfe-dh",
        metavar="VALUE",
        type=float,
        dest="cfe_dh",
        help="Height increment used in the CFE integration (default: 0.1).",
    )

    cfe.add_argument(
        "--cfe-e",
        metavar="VALUE",
        type=float,
        dest="cfe_e",
        help="CFE extent exponent (default: 2.0).",
    )

    cfe.add_argument(
        "--cfe-h",
        metavar="VALUE",
        type=float,
        dest="cfe_h",
        help="CFE height exponent (default: 3.0).",
    )

    cfe.add_argument(
        "--cfe-c",
        metavar="VALUE",
        type=float,
        dest="cfe_c",
        help="CFE connectivity exponent (default: 0.5).",
    )

    # =========================================================================
    # CONNECTIVITY OPTIONS
    # =========================================================================
    connectivity = parser.add_argument_group(
        f'{Colors.BOLD}Connectivity Options{Colors.END}',
        "Fixel-fixel connectivity and smoothing."
    )

    connectivity.add_argument(
        "--angle",
        metavar="DEGREES",
        type=float,
        help="Max angle between a streamline tangent and a fixel direction for the "
             "streamline to be assigned to the fixel (default: 45).",
    )

    connectivity.add_argument(
        "--connectivity",
        metavar="VALUE",
        type=float,
        help="Fraction of shared streamlines required for a fixel to be included in "
             "another fixel's neighbourhood (default: 0.01).",
    )

    connectivity.add_argument(
        "--smooth",
        metavar="FWHM",
        type=float,
        help="FWHM (mm) of the smoothing applied along fibre tracts; 0 disables "
             "smoothing (default: 10).",
    )

    # =========================================================================
    # DESIGN OPTIONS
    # =========================================================================
    design = parser.add_argument_group(
        f'{Colors.BOLD}Design Matrix Options{Colors.END}'
    )

    design.add_argument(
        "--column",
        metavar="FILE",
        type=Path,
        action="append",
        dest="columns",
        help="Add a fixel-wise design matrix column: a subject list file of fixel data "
             "files, one per subject. Can be used multiple times.",
    )

    design.add_argument(
        "--regressors",
        metavar="COLUMN",
        nargs="+",
        help="Participants table columns to include as regressors (DESIGN must be .tsv/.csv).",
    )

    design.add_argument(
        "--categorical-regressors",
        metavar="COLUMN",
        nargs="+",
        dest="categorical_regressors",
        help="Regressors to dummy-code (default: auto-detect).",
    )

    design.add_argument(
        "--no-intercept",
        action="store_true",
        dest="no_intercept",
        help="Do not add an intercept column to a participants-table design.",
    )

    # =========================================================================
    # INFERENCE OPTIONS
    # =========================================================================
    inference = parser.add_argument_group(
        f'{Colors.BOLD}Inference Options{Colors.END}',
        "Permutation testing parameters."
    )

    inference.add_argument(
        "--nperms",
        metavar="N",
        type=int,
        help="Number of permutations (default: 5000).",
    )

    inference.add_argument(
        "--permutations",
        metavar="FILE",
        type=Path,
        help="Text file of permutations, one per row (0-based subject indices); "
             "overrides --nperms.",
    )

    inference.add_argument(
        "--nonstationary",
        action="store_true",
        default=None,
        help="Adjust for spatial nonstationarity of the enhanced statistic.",
    )

    inference.add_argument(
        "--nperms-nonstationary",
        metavar="N",
        type=int,
        dest="nperms_nonstationary",
        help="Number of permutations used to estimate the empirical statistic (default: 5000).",
    )

    inference.add_argument(
        "--permutations-nonstationary",
        metavar="FILE",
        type=Path,
        dest="permutations_nonstationary",
        help="Text file of permutations for the nonstationarity adjustment; "
             "overrides --nperms-nonstationary.",
    )

    inference.add_argument(
        "--notest",
        action="store_true",
        default=None,
        help="Do not run the permutation test; only compute the default outputs.",
    )

    # =========================================================================
    # PROCESSING OPTIONS
    # =========================================================================
    processing = parser.add_argument_group(
        f'{Colors.BOLD}Processing Options{Colors.END}'
    )

    processing.add_argument(
        "--n-jobs",
        metavar="N",
        type=int,
        dest="n_jobs",
        help="Number of parallel jobs; -1 uses all cores (default: 1).",
    )

    processing.add_argument(
        "--random-state",
        metavar="SEED",
        type=int,
        dest="random_state",
        help="Random seed for reproducible permutations.",
    )

    return parser


def build_config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Collect the configuration values explicitly given on the command line.

    Options that were not given are left out so that configuration file
    values are kept.
    """
    mapping = {
        "cfe_dh": "cfe.dh",
        "cfe_e": "cfe.e",
        "cfe_h": "cfe.h",
        "cfe_c": "cfe.c",
        "angle": "connectivity.angle",
        "connectivity": "connectivity.threshold",
        "smooth": "connectivity.smoothing_fwhm",
        "regressors": "design.columns",
        "categorical_regressors": "design.categorical_columns",
        "nperms": "inference.n_permutations",
        "permutations": "inference.permutations_file",
        "nonstationary": "inference.nonstationary",
        "nperms_nonstationary": "inference.n_permutations_nonstationary",
        "permutations_nonstationary": "inference.permutations_nonstationary_file",
        "notest": "inference.notest",
        "n_jobs": "n_jobs",
        "random_state": "random_state",
        "verbose": "verbose",
    }

    overrides: Dict[str, Any] = {}
    for attr, key in mapping.items():
        value = getattr(args, attr, None)
        if value is None:
            continue
        if isinstance(value, Path):
            value = str(value)

        section = overrides
        parts = key.split(".")
        for part in parts[:-1]:
            section = section.setdefault(part, {})
        section[parts[-1]] = value

    if args.no_intercept:
        overrides.setdefault("design", {})["add_intercept"] = False
    if args.quiet:
        overrides["verbose"] = 0

    return overrides


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Handle --init-config flag
    if args.init_config:
        output_path = Path(args.init_config)
        if not output_path.suffix:
            output_path = output_path.with_suffix(".yaml")
        create_default_config(output_path)
        print(f"{Colors.GREEN}✓ Configuration file created: {output_path}{Colors.END}")
        return

    positional = ["fixel_dir", "subjects", "design", "contrast", "tracks", "output_dir"]
    missing = [name.upper() for name in positional if getattr(args, name) is None]
    if missing:
        parser.error(f"the following arguments are required: {', '.join(missing)}")

    print(f"{Colors.BOLD}{Colors.GREEN}FixelStats v{__version__}{Colors.END}")
    print("=" * 40)

    try:
        cfg = Config(config_file=args.config, **build_config_overrides(args))
    except Exception as e:
        print(f"{Colors.RED}✗ Invalid configuration: {e}{Colors.END}", file=sys.stderr)
        sys.exit(1)

    if args.config and cfg.get("verbose", 1) > 0:
        print(f"Using configuration from: {args.config}")

    try:
        pipeline = FixelCFEPipeline(
            fixel_dir=args.fixel_dir,
            subjects_file=args.subjects,
            design=args.design,
            contrast=args.contrast,
            tracks=args.tracks,
            output_dir=args.output_dir,
            config=cfg,
            columns=args.columns,
        )
        results = pipeline.run()

        print(f"\n{Colors.GREEN}✓ Analysis completed successfully!{Colors.END}")
        print(f"  Results saved to: {args.output_dir}")
        print(f"  Files written: {len(results['saved_files'])}")

    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted by user{Colors.END}", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        logger.exception("Analysis failed")
        print(f"\n{Colors.RED}✗ Analysis failed: {str(e)}{Colors.END}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
