import importlib.util
from pathlib import Path
import sys
import pytest

@pytest.fixture()
def load_module():
    mod_path = Path(__file__).resolve().parents[1] / "gcode_layer_fix.py"
    spec = importlib.util.spec_from_file_location("gcode_layer_fix", mod_path)
    module = importlib.util.module_from_spec(spec)
    # Ensure the module is present in sys.modules during execution (needed for dataclasses + string annotations)
    sys.modules[spec.name] = module
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module

@pytest.fixture()
def build_gcode():
    """Build Bambu-style G-code with one closed square perimeter per layer.

    Layer i (1-based) gets a square of side sides[i-1] starting and ending at the
    origin, so its perimeter signal is exactly 4 * side.
    """
    def _build(sides, features=None, header=None):
        features = features or {}
        n = len(sides)
        lines = list(header or []) + ["G28", "G1 X0 Y0 F3000"]
        for i, s in enumerate(sides, start=1):
            lines.append(f"; layer num/total_layer_count: {i}/{n}")
            lines.extend(features.get(i, ["; FEATURE: Outer wall"]))
            lines.extend([
                "G1 X0 Y0",
                f"G1 X{s} Y0 E1.0",
                f"G1 X{s} Y{s} E1.0",
                f"G1 X0 Y{s} E1.0",
                "G1 X0 Y0 E1.0",
            ])
        return lines
    return _build
