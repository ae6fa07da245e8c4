import json

import onnx
from click.testing import CliRunner

from onnx_graph_simplifier.cli import cli
from onnx_graph_simplifier.optimization.pipeline import list_passes
from onnx_models import add_relu_matmul_model, mixed_model


def save_model(model, tmp_path, name="model.onnx"):
    path = tmp_path / name
    onnx.save(model, str(path))
    return path


class TestSimplifyCommand(object):
    def test_simplify_with_report(self, tmp_path):
        input_path = save_model(add_relu_matmul_model(), tmp_path)
        output_path = tmp_path / "out.onnx"
        report_path = tmp_path / "report.json"

        result = CliRunner().invoke(cli, ["simplify", "-i", str(input_path), "-o", str(output_path),
                                          "--report", str(report_path)])

        assert result.exit_code == 0, result.output
        assert "Nodes: 3 -> 1" in result.output
        saved = onnx.load(str(output_path))
        assert [node.op_type for node in saved.graph.node] == ["MatMul"]
        report = json.loads(report_path.read_text())
        assert report["total_attempted"] == 2
        assert [op["op_name"] for op in report["folded_ops"]] == ["add", "relu"]

    def test_default_output_path(self, tmp_path):
        input_path = save_model(mixed_model(), tmp_path)
        result = CliRunner().invoke(cli, ["simplify", "-i", str(input_path), "--quiet"])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "model_simplified.onnx").exists()

    def test_options_reach_config(self, tmp_path):
        input_path = save_model(add_relu_matmul_model(), tmp_path)
        output_path = tmp_path / "out.onnx"
        result = CliRunner().invoke(cli, ["simplify", "-i", str(input_path), "-o", str(output_path),
                                          "--skip-optimizer", "Relu", "--tensor-size-threshold", "100",
                                          "--max-iterations", "5", "--quiet"])
        assert result.exit_code == 0, result.output
        saved = onnx.load(str(output_path))
        assert [node.op_type for node in saved.graph.node] == ["Relu", "MatMul"]

    def test_no_constant_folding(self, tmp_path):
        input_path = save_model(add_relu_matmul_model(), tmp_path)
        output_path = tmp_path / "out.onnx"
        result = CliRunner().invoke(cli, ["simplify", "-i", str(input_path), "-o", str(output_path),
                                          "--no-constant-folding", "--quiet"])
        assert result.exit_code == 0, result.output
        assert len(onnx.load(str(output_path)).graph.node) == 3

    def test_missing_input_exits_with_error(self, tmp_path):
        result = CliRunner().invoke(cli, ["simplify", "-i", str(tmp_path / "missing.onnx")])
        assert result.exit_code == 1

    def test_negative_threshold_is_usage_error(self, tmp_path):
        input_path = save_model(add_relu_matmul_model(), tmp_path)
        result = CliRunner().invoke(cli, ["simplify", "-i", str(input_path), "--tensor-size-threshold", "-1"])
        assert result.exit_code == 2


class TestOtherCommands(object):
    def test_infer_shapes(self, tmp_path):
        input_path = save_model(mixed_model(), tmp_path)
        output_path = tmp_path / "shapes.onnx"
        result = CliRunner().invoke(cli, ["infer-shapes", "-i", str(input_path), "-o", str(output_path),
                                          "--input-shapes", '{"x": [8, 3]}'])
        assert result.exit_code == 0, result.output
        saved = onnx.load(str(output_path))
        mm = next(vi for vi in saved.graph.value_info if vi.name == "mm")
        assert [dim.dim_value for dim in mm.type.tensor_type.shape.dim] == [8, 2]

    def test_infer_shapes_bad_json(self, tmp_path):
        input_path = save_model(mixed_model(), tmp_path)
        result = CliRunner().invoke(cli, ["infer-shapes", "-i", str(input_path), "--input-shapes", "{x"])
        assert result.exit_code == 2

    def test_list_passes(self):
        result = CliRunner().invoke(cli, ["list-passes"])
        assert result.exit_code == 0
        assert result.output.split() == list_passes()
