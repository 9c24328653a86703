import argparse
import logging
import os
from pathlib import Path

from sc_de_workflow.config.loader import load_datasets
from sc_de_workflow.logging_config import configure_logging
from sc_de_workflow.reports.compiler import VignetteCompiler
from sc_de_workflow.workflow import DEWorkflow

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_ROOT = Path("config") / "sc-de-workflow"


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the single-cell DE workflow and compile the vignettes.")
    parser.add_argument(
        "--config-root",
        type=Path,
        default=Path(os.getenv("SC_DE_CONFIG_ROOT", str(DEFAULT_CONFIG_ROOT))),
        help="directory holding global.json and datasets/*.json",
    )
    parser.add_argument("--force", action="store_true", help="recompile every vignette")
    parser.add_argument("--debug", action="store_true", help="log at DEBUG level")
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_logging(level=logging.DEBUG if args.debug else logging.INFO)

    global_config, datasets = load_datasets(args.config_root)
    output_root = global_config.output_dir or Path("output")

    for ds in datasets:
        results = DEWorkflow(ds, global_config.workflow).run()

        output_dir = output_root / ds.name
        results.write_tables(output_dir)

        if global_config.vignette_dir is None:
            logger.warning("No vignette_dir configured; skipping vignettes", extra={"dataset": ds.name})
            continue

        compiled = VignetteCompiler(global_config.vignette_dir, output_dir, results).compile(force=args.force)
        logger.info(
            "Finished dataset",
            extra={"dataset": ds.name, "output_dir": str(output_dir), "compiled": compiled},
        )


if __name__ == "__main__":
    main()
