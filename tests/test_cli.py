"""Tests for the frame driver and the command-line interface."""

import json
import sys
import os

import cv2
import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from voronoi_engine import ConfigurationError
from voronoi_annealing_cli import (
    STOP_DURATION, STOP_MAX_FRAMES, FrameDriver, SimulationCompleted,
    build_parser, load_target_image, main, parse_duration, resolve_settings,
    snapshot_path, stat_file_path, write_snapshot,
)


class FakeClock:
    def __init__(self, t=0.0, step=0.0):
        self.t = t
        self.step = step

    def __call__(self):
        now = self.t
        self.t += self.step
        return now


class FakeAnnealing:
    def __init__(self):
        self.iterations = 0

    def iterate(self):
        self.iterations += 1
        return "committed"

    def get_snapshot(self):
        return np.zeros((2, 3, 4), dtype=np.uint8)


def _write_image(path, width=12, height=8):
    img = np.zeros((height, width, 3), dtype=np.uint8)
    img[:, : width // 2] = (255, 0, 0)      # blue half (BGR)
    img[:, width // 2:] = (0, 0, 255)       # red half
    assert cv2.imwrite(str(path), img)
    return str(path)


class TestParseDuration:
    @pytest.mark.parametrize("value,expected", [
        ("3h", 10800.0), ("1m", 60.0), ("1m30s", 90.0), ("250ms", 0.25),
        ("1h2m3s", 3723.0), ("1.5s", 1.5), ("12", 12.0), (5, 5.0), (0.5, 0.5),
    ])
    def test_valid(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "bogus", "3x", "h3", "1m 30s", -1])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError):
            parse_duration(value)


class TestFrameDriver:
    def test_iterates_once_per_frame(self):
        annealing = FakeAnnealing()
        driver = FrameDriver(annealing, 10, 100, clock=FakeClock())
        for _ in range(3):
            assert driver.update() == "committed"
        assert annealing.iterations == 3
        assert driver.frames == 3

    def test_duration_elapsed(self):
        clock = FakeClock()
        driver = FrameDriver(FakeAnnealing(), 10, 100, clock=clock)
        clock.t = 10.5
        with pytest.raises(SimulationCompleted):
            driver.update()

    def test_pause_and_resume(self):
        annealing = FakeAnnealing()
        driver = FrameDriver(annealing, 10, 100, clock=FakeClock())
        driver.toggle_pause()
        assert driver.update() is None
        assert annealing.iterations == 0
        driver.resume()
        driver.update()
        assert annealing.iterations == 1
        driver.pause()
        assert not driver.running

    def test_paused_driver_still_stops(self):
        clock = FakeClock()
        driver = FrameDriver(FakeAnnealing(), 10, 100, clock=clock)
        driver.pause()
        clock.t = 11
        with pytest.raises(SimulationCompleted):
            driver.update()

    def test_snapshot_cadence(self):
        clock = FakeClock()
        written = []

        def writer(image, elapsed):
            written.append(elapsed)
            return f"snap_{int(elapsed)}.png"

        driver = FrameDriver(FakeAnnealing(), 100, 3, snapshot_writer=writer, clock=clock)
        for t in (1, 2, 4, 5, 6, 8):
            clock.t = t
            driver.update()
        assert written == [4, 8]
        assert driver.snapshots == ["snap_4.png", "snap_8.png"]

    def test_forced_snapshot(self):
        clock = FakeClock()
        driver = FrameDriver(FakeAnnealing(), 100, 50, snapshot_writer=lambda img, s: "final.png", clock=clock)
        assert driver.save_snapshot() is None
        assert driver.save_snapshot(force=True) == "final.png"

    def test_run_until_max_frames(self):
        annealing = FakeAnnealing()
        driver = FrameDriver(annealing, 1000, 1000, clock=FakeClock())
        assert driver.run(max_frames=5) == STOP_MAX_FRAMES
        assert annealing.iterations == 5

    def test_run_until_duration(self):
        annealing = FakeAnnealing()
        driver = FrameDriver(annealing, 10, 1000, clock=FakeClock(step=1.0))
        assert driver.run() == STOP_DURATION
        assert 0 < annealing.iterations <= 10


class TestFiles:
    def test_load_target_image(self, tmp_path):
        path = _write_image(tmp_path / "halves.png")
        target = load_target_image(path)
        assert target.name == "halves"
        assert (target.width, target.height) == (12, 8)
        assert target.pixels.size == 12 * 8 * 4
        pixels = target.pixels.reshape(8, 12, 4)
        assert tuple(int(v) for v in pixels[0, 0]) == (0, 0, 255, 255)
        assert tuple(int(v) for v in pixels[0, 11]) == (255, 0, 0, 255)

    def test_load_target_image_resized(self, tmp_path):
        path = _write_image(tmp_path / "halves.png")
        target = load_target_image(path, (6, 4))
        assert (target.width, target.height) == (6, 4)
        assert target.pixels.size == 6 * 4 * 4

    def test_missing_image(self, tmp_path):
        with pytest.raises(OSError):
            load_target_image(str(tmp_path / "missing.jpg"))

    def test_load_target_image_keeps_alpha(self, tmp_path):
        bgra = np.zeros((4, 6, 4), dtype=np.uint8)
        bgra[...] = (10, 20, 30, 100)
        path = str(tmp_path / "translucent.png")
        assert cv2.imwrite(path, bgra)
        target = load_target_image(path)
        pixels = target.pixels.reshape(4, 6, 4)
        assert (pixels == np.array([30, 20, 10, 100], dtype=np.uint8)).all()

    def test_load_grayscale_image(self, tmp_path):
        gray = np.full((5, 7), 90, dtype=np.uint8)
        path = str(tmp_path / "gray.png")
        assert cv2.imwrite(path, gray)
        target = load_target_image(path)
        assert (target.width, target.height) == (7, 5)
        pixels = target.pixels.reshape(5, 7, 4)
        assert (pixels == np.array([90, 90, 90, 255], dtype=np.uint8)).all()

    def test_write_snapshot(self, tmp_path):
        image = np.zeros((4, 5, 4), dtype=np.uint8)
        image[..., 2] = 200
        image[..., 3] = 255
        path = write_snapshot(str(tmp_path / "snap.png"), image)
        back = cv2.imread(path, cv2.IMREAD_UNCHANGED)
        assert back.shape == (4, 5, 4)
        assert (back == image).all()

    def test_output_names(self):
        assert stat_file_path("out", "homer", 50) == os.path.join("out", "homer_50-seeds.csv")
        assert snapshot_path("out", "homer", 50, 4, 61.7) == \
            os.path.join("out", "homer_50-seeds_4-movreduction_61.png")


class TestSettings:
    def test_defaults(self):
        args = build_parser().parse_args(["run"])
        settings = resolve_settings(args)
        assert settings["num_seeds"] == 50
        assert settings["simulation_duration"] == 3 * 3600
        assert settings["snapshots_interval"] == 60
        assert settings["movement_reduction_factor"] == 4
        assert settings["percent_threshold"] == 10
        assert settings["target_image"] == "./res/homer.jpg"
        assert settings["outdir"] == "./res"
        assert settings["random_seed"] is None

    def test_yaml_and_flag_override(self, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(
            "num_seeds: 4\n"
            "simulation_duration: 2m\n"
            "snapshots_interval: 15\n"
            "output_size: [6, 4]\n"
            "unexpected: 1\n"
        )
        args = build_parser().parse_args(["run", "--config", str(cfg), "-n", "7"])
        settings = resolve_settings(args)
        assert settings["num_seeds"] == 7
        assert settings["simulation_duration"] == 120
        assert settings["snapshots_interval"] == 15
        assert settings["output_size"] == (6, 4)
        assert "unknown config key: unexpected" in capsys.readouterr().out

    def test_bad_yaml(self, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("num_seeds: [1, 2\n")
        args = build_parser().parse_args(["run", "--config", str(cfg)])
        with pytest.raises(ConfigurationError):
            resolve_settings(args)

    @pytest.mark.parametrize("line", [
        "num_seeds: abc\n",
        "output_size: [a, 2]\n",
        "random_seed: x\n",
        "percent_threshold: hot\n",
    ])
    def test_bad_values(self, tmp_path, line):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(line)
        args = build_parser().parse_args(["run", "--config", str(cfg)])
        with pytest.raises(ConfigurationError, match="Invalid value"):
            resolve_settings(args)

    def test_show_must_be_a_boolean(self, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text('show: "false"\n')
        args = build_parser().parse_args(["run", "--config", str(cfg)])
        with pytest.raises(ConfigurationError, match="show"):
            resolve_settings(args)

    def test_show_from_config(self, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("show: false\n")
        args = build_parser().parse_args(["run", "--config", str(cfg)])
        assert resolve_settings(args)["show"] is False


class TestMain:
    def test_end_to_end(self, tmp_path, capsys):
        image = _write_image(tmp_path / "halves.png")
        outdir = tmp_path / "out"
        code = main(["run", "-i", image, "-n", "5", "-d", "1h", "-s", "1h",
                     "--max-iterations", "15", "--seed", "3", "--outdir", str(outdir)])
        assert code == 0

        summary = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert summary["stop_reason"] == STOP_MAX_FRAMES
        assert summary["iterations"] == 15
        assert summary["image_size"] == [12, 8]
        assert 0.0 <= summary["best_temperature"] < 1.0

        with open(summary["csv_log"]) as f:
            lines = f.read().splitlines()
        assert lines[0] == "elapsed_seconds,temperature"
        assert len(lines) == 1 + summary["commits"]
        assert os.path.exists(summary["final_snapshot"])

    def test_too_many_seeds(self, tmp_path, capsys):
        image = _write_image(tmp_path / "halves.png")
        code = main(["run", "-i", image, "-n", "1000", "--outdir", str(tmp_path / "out")])
        assert code == 1
        out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert "Number of seeds" in out["error"]

    def test_missing_image(self, tmp_path, capsys):
        code = main(["run", "-i", str(tmp_path / "nope.jpg"), "--outdir", str(tmp_path / "out")])
        assert code == 1
        out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert "Image loading failed" in out["error"]

    @pytest.mark.parametrize("line", ["num_seeds: abc\n", "output_size: [a, 2]\n", "random_seed: x\n"])
    def test_bad_config_value(self, tmp_path, capsys, line):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(line)
        code = main(["run", "--config", str(cfg), "--outdir", str(tmp_path / "out")])
        assert code == 1
        out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert "Invalid value" in out["error"]

    def test_no_command(self, capsys):
        assert main([]) == 2
