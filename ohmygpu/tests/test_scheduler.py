"""
Flow-Matching Scheduler Tests
=============================
"""

import json
import math

import pytest
import torch

from ohmygpu.runtime.scheduler import (
    FlowMatchEulerDiscreteScheduler,
    SchedulerConfig,
    calculate_shift,
    time_shift,
)


class TestCalculateShift:
    """Test the resolution-dependent shift."""

    def test_endpoints(self):
        assert math.isclose(calculate_shift(256), 0.5)
        assert math.isclose(calculate_shift(4096), 1.15)

    def test_linear_between_endpoints(self):
        mid = calculate_shift((256 + 4096) // 2)
        assert math.isclose(mid, (0.5 + 1.15) / 2)

    def test_1024_square_image(self):
        """Test a 1024x1024 image (64x64 patch tokens) hits the maximum shift."""
        assert math.isclose(calculate_shift(64 * 64), 1.15)


class TestSchedule:
    """Test set_timesteps."""

    def test_dynamic_schedule_shape_and_terminal(self):
        scheduler = FlowMatchEulerDiscreteScheduler()
        scheduler.set_timesteps(9, mu=calculate_shift(4096))

        assert scheduler.sigmas.shape == (10,)
        assert scheduler.timesteps.shape == (9,)
        assert float(scheduler.sigmas[-1]) == 0.0
        assert math.isclose(float(scheduler.sigmas[0]), 1.0, rel_tol=1e-6)

    def test_monotonically_decreasing(self):
        scheduler = FlowMatchEulerDiscreteScheduler()
        scheduler.set_timesteps(20, mu=0.8)
        diffs = scheduler.sigmas[1:] - scheduler.sigmas[:-1]
        assert (diffs < 0).all()

    def test_dynamic_shift_formula(self):
        mu = 0.9
        scheduler = FlowMatchEulerDiscreteScheduler()
        scheduler.set_timesteps(4, mu=mu)
        base = torch.linspace(1.0, 1.0 / 1000, 4, dtype=torch.float64)
        expected = time_shift(mu, base).float()
        assert torch.allclose(scheduler.sigmas[:-1], expected, atol=1e-6)
        assert torch.allclose(scheduler.timesteps, expected * 1000, atol=1e-3)

    def test_static_shift(self):
        config = SchedulerConfig(shift=3.0, use_dynamic_shifting=False)
        scheduler = FlowMatchEulerDiscreteScheduler(config)
        scheduler.set_timesteps(5)

        assert float(scheduler.sigmas[-1]) == 0.0
        assert math.isclose(float(scheduler.sigmas[0]), 1.0, rel_tol=1e-6)
        # Shifting pushes every intermediate sigma towards noise
        unshifted = torch.linspace(scheduler.sigma_max, scheduler.sigma_min, 5, dtype=torch.float64)
        assert scheduler.sigmas.shape == (6,)
        assert (scheduler.sigmas[1:-2].double() >= unshifted[1:-1] - 1e-6).all()

    def test_dynamic_requires_mu(self):
        scheduler = FlowMatchEulerDiscreteScheduler()
        with pytest.raises(ValueError):
            scheduler.set_timesteps(4)

    def test_invalid_step_count(self):
        with pytest.raises(ValueError):
            FlowMatchEulerDiscreteScheduler().set_timesteps(0, mu=0.5)

    def test_normalized_timestep_starts_at_zero(self):
        scheduler = FlowMatchEulerDiscreteScheduler()
        scheduler.set_timesteps(9, mu=1.15)
        assert math.isclose(scheduler.current_timestep_normalized(), 0.0, abs_tol=1e-4)


class TestStep:
    """Test Euler integration."""

    def test_integrates_constant_velocity(self):
        """Test a constant velocity moves the sample by the total sigma change."""
        scheduler = FlowMatchEulerDiscreteScheduler()
        scheduler.set_timesteps(6, mu=0.7)
        sample = torch.zeros(1, 4, 2, 2)
        velocity = torch.ones(1, 4, 2, 2)

        for _ in range(6):
            sample = scheduler.step(velocity, sample)

        assert torch.allclose(sample, torch.full_like(sample, -1.0), atol=1e-5)
        assert scheduler.step_index == 6

    def test_step_keeps_dtype(self):
        scheduler = FlowMatchEulerDiscreteScheduler()
        scheduler.set_timesteps(2, mu=0.5)
        out = scheduler.step(torch.ones(2, dtype=torch.bfloat16), torch.zeros(2, dtype=torch.bfloat16))
        assert out.dtype == torch.bfloat16

    def test_step_past_end_raises(self):
        scheduler = FlowMatchEulerDiscreteScheduler()
        scheduler.set_timesteps(1, mu=0.5)
        scheduler.step(torch.zeros(2), torch.zeros(2))
        with pytest.raises(RuntimeError):
            scheduler.step(torch.zeros(2), torch.zeros(2))

    def test_step_before_set_timesteps_raises(self):
        with pytest.raises(RuntimeError):
            FlowMatchEulerDiscreteScheduler().step(torch.zeros(2), torch.zeros(2))


class TestSchedulerConfig:
    """Test scheduler config loading."""

    def test_defaults_without_file(self, tmp_path):
        config = SchedulerConfig.from_pretrained(tmp_path)
        assert config == SchedulerConfig()

    def test_reads_scheduler_config(self, tmp_path):
        (tmp_path / "scheduler").mkdir()
        (tmp_path / "scheduler" / "scheduler_config.json").write_text(json.dumps({
            "_class_name": "FlowMatchEulerDiscreteScheduler",
            "num_train_timesteps": 1000,
            "shift": 6.0,
            "use_dynamic_shifting": False,
        }))
        config = SchedulerConfig.from_pretrained(tmp_path)
        assert config.shift == 6.0
        assert config.use_dynamic_shifting is False
