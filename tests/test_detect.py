# Each layer is a closed square: perimeter signal = 4 * side.
BASE = 75  # 300 mm

def _sides(n=25, **overrides):
    sides = [BASE] * n
    for layer, side in overrides.items():
        sides[int(layer.lstrip("L")) - 1] = side
    return sides

def _flags(m, lines, thresholds=None):
    return m.analyze_lines(lines, thresholds).problem_layers

def test_sixty_percent_drop_is_flagged(load_module, build_gcode):
    m = load_module
    # 300 -> 120 mm at layer 22
    assert _flags(m, build_gcode(_sides(L22=30))) == [22]

def test_uniform_layers_are_not_flagged(load_module, build_gcode):
    m = load_module
    assert _flags(m, build_gcode(_sides())) == []

def test_exact_fifty_percent_drop_is_not_flagged(load_module, build_gcode):
    m = load_module
    # 300 -> 150 mm is exactly -50%, the bound is strict
    assert _flags(m, build_gcode(_sides(L22=37.5))) == []
    # 300 -> 148 mm is just past it
    assert _flags(m, build_gcode(_sides(L22=37))) == [22]

def test_near_total_drop_is_not_flagged(load_module, build_gcode):
    m = load_module
    # 2500 -> 100 mm is -96%
    assert _flags(m, build_gcode(_sides(L21=625, L22=25))) == []
    # 2000 -> 120 mm is -94%
    assert _flags(m, build_gcode(_sides(L21=500, L22=30))) == [22]

def test_small_perimeter_is_not_flagged(load_module, build_gcode):
    m = load_module
    # 150 -> 60 mm: -60% but below the 80 mm floor
    sides = [37.5] * 25
    sides[21] = 15
    assert _flags(m, build_gcode(sides)) == []

def test_early_layers_are_not_flagged(load_module, build_gcode):
    m = load_module
    assert _flags(m, build_gcode(_sides(L20=30))) == []
    assert _flags(m, build_gcode(_sides(L21=30))) == [21]

def test_support_only_layer_is_not_flagged(load_module, build_gcode):
    m = load_module
    support = {22: ["; FEATURE: Support"]}
    assert _flags(m, build_gcode(_sides(L22=30), features=support)) == []
    mixed = {22: ["; FEATURE: Support", "; FEATURE: Outer wall"]}
    assert _flags(m, build_gcode(_sides(L22=30), features=mixed)) == [22]

def test_flags_are_in_layer_order(load_module, build_gcode):
    m = load_module
    assert _flags(m, build_gcode(_sides(n=30, L22=30, L26=30))) == [22, 26]

def test_zero_previous_signal_never_flags(load_module):
    m = load_module
    signals = [m.LayerSignal(24, 0.0, 300.0), m.LayerSignal(25, 120.0, 0.0)]
    assert m.detect_problematic_layers(signals, {}) == []

def test_first_two_layers_are_skipped(load_module):
    m = load_module
    t = m.DetectionThresholds(min_layer=0)
    signals = [m.LayerSignal(1, 120.0, 300.0), m.LayerSignal(2, 120.0, 300.0)]
    assert m.detect_problematic_layers(signals, {}, t) == [2]

def test_custom_thresholds(load_module, build_gcode):
    m = load_module
    lines = build_gcode(_sides(n=10, L5=30))
    assert _flags(m, lines) == []
    t = m.DetectionThresholds(min_layer=3, min_signal_mm=50.0)
    assert _flags(m, lines, t) == [5]
