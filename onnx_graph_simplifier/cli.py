"""
Command-line interface for ONNX Graph Simplifier.
"""

import sys
import click
import json
import logging
from pathlib import Path

from colorama import Fore, Style

from onnx_graph_simplifier.version import __version__
from onnx_graph_simplifier.config import DEFAULT_MAX_ITERATIONS, DEFAULT_TENSOR_SIZE_THRESHOLD, SimplifyConfig
from onnx_graph_simplifier.core.errors import SimplifierError
from onnx_graph_simplifier.model import Model
from onnx_graph_simplifier.optimization.folding_record import FoldingRecord
from onnx_graph_simplifier.optimization.pipeline import list_passes
from onnx_graph_simplifier.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def _print_summary(model: Model, nodes_before: int, record: FoldingRecord, verbose: bool) -> None:
    """Print node counts and folding results, failures highlighted."""
    click.echo(f"Nodes: {nodes_before} -> {len(model.graph.nodes)}")
    click.echo(f"Folding: {record.total_attempted} attempted, "
               f"{Fore.GREEN}{record.total_succeeded} folded{Style.RESET_ALL}, "
               f"{Fore.YELLOW if record.total_failed else ''}{record.total_failed} not folded{Style.RESET_ALL}")
    if verbose:
        for op in record.failures:
            click.echo(f"  {Fore.YELLOW}{op.op_name}{Style.RESET_ALL} ({op.op_type}): {op.error_msg}")


@click.group()
@click.version_option(version=__version__)
def cli():
    """ONNX Graph Simplifier - fold constants and simplify ONNX graphs."""
    pass


@cli.command("simplify")
@click.option("-i", "--input", "input_path", required=True, help="Input ONNX model path")
@click.option("-o", "--output", "output_path", help="Output ONNX model path")
@click.option("--skip-optimizer", "skip_optimizers", multiple=True,
              help="Pass name or operator type to skip (repeatable), see list-passes")
@click.option("--no-constant-folding", is_flag=True, help="Disable constant folding")
@click.option("--no-shape-inference", is_flag=True, help="Disable shape inference")
@click.option("--tensor-size-threshold", type=click.IntRange(min=0), default=DEFAULT_TENSOR_SIZE_THRESHOLD,
              show_default=True, help="Largest tensor to fold, in elements")
@click.option("--max-iterations", type=click.IntRange(min=1), default=DEFAULT_MAX_ITERATIONS,
              show_default=True, help="Pipeline iteration cap")
@click.option("--report", "report_path", help="Write the folding record to this JSON file")
@click.option("--verbose/--quiet", default=True, help="Verbose output")
def run_simplify(input_path, output_path, skip_optimizers, no_constant_folding, no_shape_inference,
                 tensor_size_threshold, max_iterations, report_path, verbose):
    """Simplify an ONNX model."""
    setup_logging(logging.INFO if verbose else logging.WARNING)
    try:
        config = SimplifyConfig(
            skip_optimizers=frozenset(skip_optimizers),
            constant_folding=not no_constant_folding,
            shape_inference=not no_shape_inference,
            tensor_size_threshold=tensor_size_threshold,
            max_iterations=max_iterations,
        )

        # Set default output path if not provided
        if not output_path:
            input_path_obj = Path(input_path)
            output_path = str(input_path_obj.with_name(f"{input_path_obj.stem}_simplified{input_path_obj.suffix}"))

        logger.info(f"Simplifying {input_path}")
        model = Model(input_path)
        nodes_before = len(model.graph.nodes)
        model.simplify(config, show_progress=verbose)
        model.save(output_path)

        if report_path:
            with open(report_path, 'w') as f:
                json.dump(model.record.to_dict(), f, indent=2)
            logger.info(f"Folding report saved to {report_path}")

        _print_summary(model, nodes_before, model.record, verbose)
        logger.info(f"Simplified model saved to {output_path}")

    except SimplifierError as e:
        logger.error(f"Error during simplification: {e}")
        sys.exit(1)


@cli.command("infer-shapes")
@click.option("-i", "--input", "input_path", required=True, help="Input ONNX model path")
@click.option("-o", "--output", "output_path", help="Output ONNX model path")
@click.option("--input-shapes", help="Input shapes as JSON dictionary, e.g. '{\"input\": [1, 3, 224, 224]}'")
@click.option("--verbose/--quiet", default=True, help="Verbose output")
def run_infer_shapes(input_path, output_path, input_shapes, verbose):
    """Infer shapes for an ONNX model."""
    setup_logging(logging.INFO if verbose else logging.WARNING)
    try:
        # Parse input shapes if provided
        shapes_dict = None
        if input_shapes:
            try:
                shapes_dict = json.loads(input_shapes)
            except json.JSONDecodeError as e:
                raise click.BadParameter(f"not valid JSON: {e}", param_hint="--input-shapes")

        # Set default output path if not provided
        if not output_path:
            input_path_obj = Path(input_path)
            output_path = str(input_path_obj.with_name(f"{input_path_obj.stem}_shapes{input_path_obj.suffix}"))

        logger.info(f"Inferring shapes for {input_path}")
        model = Model(input_path).infer_shapes(shapes_dict)
        model.save(output_path)

        if verbose:
            tensor_count = len(model.graph.tensor_map)
            shaped_tensors = sum(1 for t in model.graph.tensor_map.values() if t.shape is not None)
            click.echo(f"Shape inference complete. {shaped_tensors}/{tensor_count} tensors have shapes.")

        logger.info(f"Model with inferred shapes saved to {output_path}")

    except SimplifierError as e:
        logger.error(f"Error during shape inference: {e}")
        sys.exit(1)


@cli.command("list-passes")
def run_list_passes():
    """List optimizer pass names, in run order."""
    for name in list_passes():
        click.echo(name)


def main():
    """Entry point for the CLI."""
    return cli(prog_name="onnx-graph-simplifier")


if __name__ == "__main__":
    sys.exit(main())
