#!/usr/bin/env python3

from __future__ import annotations

USAGE = (
    "G-code Layer Fix\n\n"
    "Usage:\n"
    "  python gcode_layer_fix.py -f <file.gcode> [-o] [--report] [--plot]\n"
    "  python gcode_layer_fix.py -d <directory> [-r] [-o] [--report] [--plot]\n"
    "  python gcode_layer_fix.py -f <file.gcode> --layer N [--temp C] [--fan PCT] [-o]\n\n"
    "Options:\n"
    "  -o, --overwrite      Overwrite the input instead of writing <name>_modified.gcode\n"
    "  -r, --recursive      Also scan sub-directories in directory mode\n"
    "  --report             Print per-layer signal table only; nothing is written\n"
    "  --plot               Save a per-layer signal PNG next to the input\n"
    "  --min-layer N        Ignore problematic layers at or below N (default 20)\n"
    "  --min-signal MM      Ignore layers whose perimeter length is at or below MM (default 80)\n"
    "  --upper-pct P        Flag drops steeper than P percent (default -50)\n"
    "  --lower-pct P        ...but not steeper than P percent (default -95)\n\n"
    "Notes:\n"
    "  - Only text G-code from Bambu Studio / OrcaSlicer is supported (layer markers\n"
    "    '; layer num/total_layer_count: n/N').\n"
    "  - Files already ending in '_modified.gcode' are skipped in directory mode.\n"
)

import math
import os
import re
import shutil
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple


# ------------------------------- Constants -------------------------------- #


LAYER_MARKER = "; layer num/total_layer_count: "
MOVE_PREFIX = "G1"
FEATURE_PREFIX = "; FEATURE:"
SUPPORT_NAME = "Support"
SUPPORT_FEATURE = "; FEATURE: Support"

NOZZLE_TEMP_KEY = "nozzle_temperature"
FAN_MAX_SPEED_KEY = "fan_max_speed"

# Perimeter-drop detection defaults
PERIM_PCT_CHG_UPPER = -50.0      # drop must be steeper than this (percent)
PERIM_PCT_CHG_LOWER = -95.0      # ...but not a near-total drop (non-printing layer)
MIN_PERIM_MM = 80.0              # ignore layers with tiny perimeter length
MIN_PROB_LAYER = 20              # brim/skirt/first layers are never flagged

# Corrective action around a problematic layer L
FAN_SPEED_PCT_PROB_LAYERS = 1    # percent, applied at L - PRE_LAYER_OFFSET
TEMP_INCREASE_PROB_LAYERS = 20   # Celsius above default, applied at L - PRE_LAYER_OFFSET
PRE_LAYER_OFFSET = 3
POST_LAYER_OFFSET = 2            # restore fan/temp at L + POST_LAYER_OFFSET

MODIFIED_SUFFIX = "_modified.gcode"

INT_RE = re.compile(r"[+-]?[0-9]+")


class InvalidGcodeError(ValueError):
    """Raised when an input file is not text G-code."""


# ---------------------------- Line Classifier ----------------------------- #


def is_layer_boundary(line: str) -> bool:
    return line.startswith(LAYER_MARKER)


def is_movement_line(line: str) -> bool:
    return line.startswith(MOVE_PREFIX)


def is_support_tag(line: str) -> bool:
    return line == SUPPORT_FEATURE


def is_other_feature_tag(line: str) -> bool:
    # '; FEATURE: Support interface' counts as neither support nor other
    return line.startswith(FEATURE_PREFIX) and SUPPORT_NAME not in line


def _parse_float(text: str) -> float:
    # Malformed numbers count as zero
    try:
        return float(text)
    except ValueError:
        return 0.0


def extract_planar_coordinates(line: str) -> Tuple[float, float, bool, bool]:
    """Return (x, y, has_x, has_y) from the whitespace fields of a move line."""
    x = y = 0.0
    has_x = has_y = False
    for word in line.split():
        if word[0] == "X":
            x = _parse_float(word[1:])
            has_x = True
        elif word[0] == "Y":
            y = _parse_float(word[1:])
            has_y = True
    return x, y, has_x, has_y


def extract_named_scalar(lines: Iterable[str], name: str) -> int:
    """Integer value of the first '; <name> = <value>' comment, 0 if absent or malformed."""
    prefix = f"; {name} = "
    for line in lines:
        if line.startswith(prefix):
            value = line.split(" = ")[1]
            # Optional sign and ASCII digits only; padding or underscores read as 0
            return int(value) if INT_RE.fullmatch(value) else 0
    return 0


def default_nozzle_temperature(lines: Iterable[str]) -> int:
    return extract_named_scalar(lines, NOZZLE_TEMP_KEY)


def max_fan_speed(lines: Iterable[str]) -> int:
    return extract_named_scalar(lines, FAN_MAX_SPEED_KEY)


# ----------------------------- Layer Segmenter ----------------------------- #


def count_layers(lines: Iterable[str]) -> int:
    return sum(1 for line in lines if is_layer_boundary(line))


def layer_start_lines(lines: Iterable[str]) -> Dict[int, int]:
    """Map layer number (1-based) to the offset of the first line inside it."""
    starts: Dict[int, int] = {}
    current_layer = 0
    for i, line in enumerate(lines):
        if is_layer_boundary(line):
            current_layer += 1
            starts[current_layer] = i + 1
    return starts


def support_only_layers(lines: Iterable[str]) -> Dict[int, bool]:
    """Map layer number (1-based) to True when its only feature is support.

    Content before the first layer marker (layer 0) is never classified.
    A layer without any feature tag stays False.
    """
    support_only: Dict[int, bool] = {}
    current_layer = 0
    has_other_feature = False
    for line in lines:
        if is_layer_boundary(line):
            if has_other_feature:
                support_only[current_layer] = False
            current_layer += 1
            has_other_feature = False
            support_only[current_layer] = False
        elif is_other_feature_tag(line):
            has_other_feature = True
        elif is_support_tag(line) and current_layer > 0:
            support_only[current_layer] = True
    # Settle the last layer, no marker follows it
    if has_other_feature and current_layer > 0:
        support_only[current_layer] = False
    return support_only


# ------------------------- Geometric Signal Tracker ------------------------ #


@dataclass
class LayerSignal:
    layer: int
    length_mm: float
    previous_mm: float

    @property
    def percent_change(self) -> Optional[float]:
        if self.previous_mm == 0:
            return None
        return (self.length_mm - self.previous_mm) / self.previous_mm * 100.0


class LayerSignalTracker:
    """Accumulates XY travel per layer once extrusion has started.

    The tracker is fed one line at a time. Crossing a layer marker returns the
    finalized signal of the layer that just ended; the layer index is bumped
    before that, so the preamble before the first marker reports as layer 0.
    """

    def __init__(self) -> None:
        self.layer = -1
        self.previous_mm = 0.0
        self.current_mm = 0.0
        self.last_x = 0.0
        self.last_y = 0.0
        self.extruding = False

    def feed(self, line: str) -> Optional[LayerSignal]:
        if is_layer_boundary(line):
            self.layer += 1
            signal = LayerSignal(self.layer, self.current_mm, self.previous_mm)
            self.previous_mm = self.current_mm
            self.current_mm = 0.0
            return signal
        if is_movement_line(line):
            x, y, has_x, has_y = extract_planar_coordinates(line)
            if has_x and has_y:
                if self.extruding:
                    self.current_mm += math.hypot(x - self.last_x, y - self.last_y)
                self.extruding = True
                self.last_x, self.last_y = x, y
        return None


def layer_signals(lines: Iterable[str]) -> List[LayerSignal]:
    tracker = LayerSignalTracker()
    signals: List[LayerSignal] = []
    for line in lines:
        signal = tracker.feed(line)
        if signal is not None:
            signals.append(signal)
    return signals


# ----------------------------- Anomaly Detector ---------------------------- #


@dataclass
class DetectionThresholds:
    upper_pct: float = PERIM_PCT_CHG_UPPER
    lower_pct: float = PERIM_PCT_CHG_LOWER
    min_signal_mm: float = MIN_PERIM_MM
    min_layer: int = MIN_PROB_LAYER


def is_problematic(signal: LayerSignal, support_only: Dict[int, bool],
                   thresholds: DetectionThresholds) -> bool:
    # Layers 0 and 1 have no meaningful previous layer
    if signal.layer <= 1:
        return False
    pct = signal.percent_change
    if pct is None:
        return False
    if not (thresholds.lower_pct < pct < thresholds.upper_pct):
        return False
    if signal.length_mm <= thresholds.min_signal_mm:
        return False
    return signal.layer > thresholds.min_layer and not support_only.get(signal.layer, False)


def detect_problematic_layers(signals: Iterable[LayerSignal], support_only: Dict[int, bool],
                              thresholds: Optional[DetectionThresholds] = None) -> List[int]:
    """Layers whose perimeter length dropped sharply (but not to ~zero) vs the layer below."""
    thresholds = thresholds or DetectionThresholds()
    return [s.layer for s in signals if is_problematic(s, support_only, thresholds)]


# --------------------------- Instruction Injector -------------------------- #


def fan_value(percent: int) -> int:
    # Percent -> 0..255 PWM, truncated
    return int(percent / 100.0 * 255)


def temperature_command(celsius: int, layer: int) -> str:
    return f"M104 S{celsius} ; Set hotend temperature to {celsius}°C at layer {layer}"


def fan_speed_command(percent: int, layer: int) -> str:
    return f"M106 S{fan_value(percent)} ; Set fan speed to {percent}% at layer {layer}"


def _insert_after_marker(lines: List[str], layer: int, command: str) -> List[str]:
    # Marker counter starts at -1: `layer` 0 is the first marker in the file
    out: List[str] = []
    current_layer = -1
    for line in lines:
        out.append(line)
        if is_layer_boundary(line):
            current_layer += 1
            if current_layer == layer:
                out.append(command)
    return out


def inject_temperature(lines: List[str], layer: int, celsius: int) -> List[str]:
    return _insert_after_marker(lines, layer, temperature_command(celsius, layer))


def inject_fan_speed(lines: List[str], layer: int, percent: int) -> List[str]:
    return _insert_after_marker(lines, layer, fan_speed_command(percent, layer))


def apply_corrections(lines: List[str], problem_layers: Iterable[int],
                      default_temp: int, max_fan: int) -> List[str]:
    """Run hotter with less cooling just below each problem layer, restore above it."""
    for layer in problem_layers:
        below = layer - PRE_LAYER_OFFSET
        above = layer + POST_LAYER_OFFSET
        lines = inject_fan_speed(lines, below, FAN_SPEED_PCT_PROB_LAYERS)
        lines = inject_temperature(lines, below, default_temp + TEMP_INCREASE_PROB_LAYERS)
        lines = inject_fan_speed(lines, above, max_fan)
        lines = inject_temperature(lines, above, default_temp)
    return lines


# ------------------------------ Analysis Model ----------------------------- #


@dataclass
class LayerAnalysis:
    layer_count: int
    start_lines: Dict[int, int]
    support_only: Dict[int, bool]
    signals: List[LayerSignal]
    problem_layers: List[int]
    default_temp: int
    max_fan: int
    thresholds: DetectionThresholds = field(default_factory=DetectionThresholds)


def analyze_lines(lines: List[str], thresholds: Optional[DetectionThresholds] = None) -> LayerAnalysis:
    thresholds = thresholds or DetectionThresholds()
    support_only = support_only_layers(lines)
    signals = layer_signals(lines)
    return LayerAnalysis(
        layer_count=count_layers(lines),
        start_lines=layer_start_lines(lines),
        support_only=support_only,
        signals=signals,
        problem_layers=detect_problematic_layers(signals, support_only, thresholds),
        default_temp=default_nozzle_temperature(lines),
        max_fan=max_fan_speed(lines),
        thresholds=thresholds,
    )


# ------------------------------- File Helpers ------------------------------ #


def _assert_text_gcode(path: Path) -> None:
    with path.open("rb") as f:
        head = f.read(512)
    if head.startswith(b"GCDE"):
        raise InvalidGcodeError(
            f"binary G-code detected (magic 'GCDE') in {path.name}; "
            "disable binary G-code output in the slicer and re-slice"
        )
    if b"\x00" in head:
        raise InvalidGcodeError(f"{path.name} appears to be binary (NUL bytes detected)")


def read_gcode_lines(path: Path) -> List[str]:
    _assert_text_gcode(path)
    # Undecodable bytes survive the round trip to write_gcode_lines
    with path.open("r", encoding="utf-8", errors="surrogateescape") as fh:
        return [raw.rstrip("\n") for raw in fh]


def _copy_target_mode(path: Path, tmp: str) -> None:
    # mkstemp files are 0600; match the file being replaced, else a plain create
    if path.exists():
        shutil.copymode(path, tmp)
        return
    umask = os.umask(0)
    os.umask(umask)
    os.chmod(tmp, 0o666 & ~umask)


def write_gcode_lines(path: Path, lines: Iterable[str]) -> None:
    """Write via a temp file in the target directory, then move it into place."""
    d = path.resolve().parent
    fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp", text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="\n") as out:
            for line in lines:
                out.write(line + "\n")
        _copy_target_mode(path, tmp)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.unlink(tmp)
            except OSError:
                pass


def output_path_for(path: Path, overwrite: bool = False) -> Path:
    if overwrite:
        return path
    if ".gcode" in path.name:
        return path.with_name(path.name.replace(".gcode", MODIFIED_SUFFIX, 1))
    return path.with_name(f"{path.stem}_modified{path.suffix}")


def gcode_files_in(directory: Path, recursive: bool = False) -> List[Path]:
    candidates = directory.rglob("*.gcode") if recursive else directory.glob("*.gcode")
    files = [p for p in candidates if p.is_file() and not p.name.endswith(MODIFIED_SUFFIX)]
    return sorted(files, key=lambda p: str(p).lower())


# ---------------------------------- Report --------------------------------- #


def fmt_float(val: Optional[float], unit: str = "", digits: int = 2) -> str:
    if val is None:
        return "-"
    return f"{val:.{digits}f}{unit}"


def print_report(path: Path, analysis: LayerAnalysis) -> None:
    t = analysis.thresholds
    print(f"File: {path}")
    print("")
    print("Metadata")
    print(f"- Layers: {analysis.layer_count}")
    print(f"- Default nozzle temp: {analysis.default_temp}C")
    print(f"- Max fan speed: {analysis.max_fan}%")
    support = sorted(k for k, v in analysis.support_only.items() if v)
    print(f"- Support-only layers: {len(support)}")
    print("")
    print("Thresholds")
    print(f"- Drop window: {t.lower_pct:.0f}% < change < {t.upper_pct:.0f}%")
    print(f"- Min perimeter: {t.min_signal_mm:.1f} mm, min layer: {t.min_layer}")
    print("")
    print("Layers")
    print(f"  {'layer':>5}  {'start':>7}  {'perimeter':>11}  {'change':>8}  flags")
    flagged = set(analysis.problem_layers)
    for s in analysis.signals:
        marks: List[str] = []
        if analysis.support_only.get(s.layer):
            marks.append("support")
        if s.layer in flagged:
            marks.append("PROBLEM")
        start = analysis.start_lines.get(s.layer)
        start_txt = str(start) if start is not None else "-"
        print(f"  {s.layer:>5}  {start_txt:>7}  {fmt_float(s.length_mm, ' mm', 1):>11}  "
              f"{fmt_float(s.percent_change, '%', 1):>8}  {' '.join(marks)}")
    print("")
    print(f"Problematic layers: {analysis.problem_layers}")


# ----------------------------------- Plot ---------------------------------- #


def _ensure_matplotlib():  # returns pyplot module or None
    try:
        import matplotlib
        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # type: ignore
        return plt
    except ImportError:
        return None


def plot_layer_signal(path: Path, analysis: LayerAnalysis, out_path: Optional[Path] = None) -> Optional[Path]:
    """Per-layer perimeter length with problem layers marked; returns Path or None."""
    if not analysis.signals:
        return None
    plt = _ensure_matplotlib()
    if plt is None:
        print("Matplotlib not available; skipping plot.")
        return None

    layers = [s.layer for s in analysis.signals]
    lengths = [s.length_mm for s in analysis.signals]
    by_layer = {s.layer: s.length_mm for s in analysis.signals}

    fig, ax = plt.subplots(figsize=(11, 5))
    ax.plot(layers, lengths, label="Perimeter (mm)", color="#1f77b4")
    support = [k for k in layers if analysis.support_only.get(k)]
    if support:
        ax.scatter(support, [by_layer[k] for k in support], color="#7f7f7f", zorder=2, label="Support only")
    if analysis.problem_layers:
        ax.scatter(analysis.problem_layers, [by_layer[k] for k in analysis.problem_layers],
                   color="red", zorder=3, label="Problematic")
    ax.axvline(analysis.thresholds.min_layer, color="#ff7f0e", linestyle="--", alpha=0.6, label="Min layer")
    ax.set_xlabel("Layer")
    ax.set_ylabel("Perimeter (mm)")
    ax.grid(True, alpha=0.3)
    ax.legend()
    fig.suptitle(f"Layer Perimeter\n{path.stem} • Layers: {analysis.layer_count}")
    fig.tight_layout(rect=[0, 0, 1, 0.92])

    if out_path is None:
        out_path = path.with_name(f"{path.stem}.layer_signal.png")
    fig.savefig(out_path, dpi=140)
    plt.close(fig)
    return out_path


# -------------------------------- Processing ------------------------------- #


@dataclass
class RunOptions:
    overwrite: bool = False
    report_only: bool = False
    plot: bool = False
    layer: Optional[int] = None
    temp: Optional[int] = None
    fan: Optional[int] = None
    thresholds: DetectionThresholds = field(default_factory=DetectionThresholds)

    @property
    def direct_edit(self) -> bool:
        return self.layer is not None


def process_file(path: Path, opts: RunOptions) -> Optional[Path]:
    """Analyze one file and write the corrected copy; returns the output path (None in report mode)."""
    print(f"Processing '{path}'")
    lines = read_gcode_lines(path)

    if opts.direct_edit:
        modified = lines
        if opts.fan is not None:
            modified = inject_fan_speed(modified, opts.layer, opts.fan)
        if opts.temp is not None:
            modified = inject_temperature(modified, opts.layer, opts.temp)
        if modified == lines:
            print(f"Warning: layer {opts.layer} not found; file left unchanged")
    else:
        analysis = analyze_lines(lines, opts.thresholds)
        print(f"File '{path}' has {analysis.layer_count} layers")
        if opts.report_only:
            print_report(path, analysis)
        else:
            print(f"Problematic layers: {analysis.problem_layers}")
        if opts.plot:
            saved = plot_layer_signal(path, analysis)
            if saved:
                print(f"Saved layer signal plot: {saved.name}")
        if opts.report_only:
            return None
        modified = apply_corrections(lines, analysis.problem_layers, analysis.default_temp, analysis.max_fan)

    out_path = output_path_for(path, opts.overwrite)
    write_gcode_lines(out_path, modified)
    print(f"Modification complete. New file saved as {out_path}.")
    return out_path


def process_files(paths: Iterable[Path], opts: RunOptions) -> int:
    """Process files one at a time; a failing file does not stop the rest."""
    failures = 0
    for p in paths:
        try:
            process_file(p, opts)
        except (OSError, InvalidGcodeError) as e:
            failures += 1
            print(f"Error processing '{p}': {e}")
    return 1 if failures else 0


# ----------------------------------- CLI ----------------------------------- #


def main(argv: List[str]) -> int:
    opts = RunOptions()
    files: List[Path] = []
    dirs: List[Path] = []
    recursive = False

    args = argv[1:]
    if not args:
        print(USAGE)
        return 2

    def _value(i: int, conv, flag: str):
        if i + 1 >= len(args):
            raise ValueError(f"missing value for {flag}")
        try:
            return conv(args[i + 1])
        except ValueError:
            raise ValueError(f"invalid value for {flag}: {args[i + 1]!r}") from None

    i = 0
    try:
        while i < len(args):
            tok = args[i]
            if tok in {"-h", "--help"}:
                print(USAGE)
                return 0
            if tok in {"-f", "--file"}:
                files.append(_value(i, Path, tok))
                i += 2
                continue
            if tok in {"-d", "--dir"}:
                dirs.append(_value(i, Path, tok))
                i += 2
                continue
            if tok in {"-o", "--overwrite"}:
                opts.overwrite = True
                i += 1
                continue
            if tok in {"-r", "--recursive"}:
                recursive = True
                i += 1
                continue
            if tok == "--report":
                opts.report_only = True
                i += 1
                continue
            if tok == "--plot":
                opts.plot = True
                i += 1
                continue
            if tok == "--layer":
                opts.layer = _value(i, int, tok)
                i += 2
                continue
            if tok == "--temp":
                opts.temp = _value(i, int, tok)
                i += 2
                continue
            if tok == "--fan":
                opts.fan = _value(i, int, tok)
                i += 2
                continue
            if tok == "--min-layer":
                opts.thresholds.min_layer = _value(i, int, tok)
                i += 2
                continue
            if tok == "--min-signal":
                opts.thresholds.min_signal_mm = _value(i, float, tok)
                i += 2
                continue
            if tok == "--upper-pct":
                opts.thresholds.upper_pct = _value(i, float, tok)
                i += 2
                continue
            if tok == "--lower-pct":
                opts.thresholds.lower_pct = _value(i, float, tok)
                i += 2
                continue
            if tok.startswith("-"):
                raise ValueError(f"unknown option {tok}")
            p = Path(tok)
            (dirs if p.is_dir() else files).append(p)
            i += 1
    except ValueError as e:
        print(f"Error: {e}")
        print(USAGE)
        return 2

    if opts.direct_edit and opts.temp is None and opts.fan is None:
        print("Error: --layer needs --temp and/or --fan")
        return 2
    if not opts.direct_edit and (opts.temp is not None or opts.fan is not None):
        print("Error: --temp/--fan need --layer")
        return 2
    if opts.direct_edit and opts.report_only:
        print("Error: --report cannot be combined with --layer")
        return 2
    if not files and not dirs:
        print("Error: no files provided")
        return 2

    targets: List[Path] = list(files)
    for d in dirs:
        if not d.is_dir():
            print(f"Warning: directory not found: {d}")
            continue
        targets.extend(gcode_files_in(d, recursive=recursive))
    if not targets:
        print("Error: no G-code files to process")
        return 2

    return process_files(targets, opts)


def run() -> None:
    raise SystemExit(main(sys.argv))


if __name__ == "__main__":
    try:
        exit_code = main(sys.argv)
    except SystemExit:
        raise
    except Exception as e:
        print(f"Fatal error: {e}")
        import traceback
        traceback.print_exc()
        exit_code = 1
    raise SystemExit(exit_code)
