"""Unit tests for the behavior state machine.

Every test drives the machine tick by tick with synthetic snapshots and
sensor readings at explicit times.

Run with: pytest tests/unit/test_behavior.py -v
"""

import random
from unittest.mock import MagicMock

import pytest

from conftest import make_snapshot, make_target, readings
from mower.control.behavior import BehaviorStateMachine
from mower.control.drive import Actuator, DriveController
from mower.control.speaker import Announcement, RecordingSpeaker, Speaker
from mower.coordination.notifier import NotificationDispatcher
from mower.coordination.swarm import SwarmCoordinator
from mower.core.config import BehaviorConfig, MowerConfig, OperatingMode
from mower.core.errors import FaultType, SensorFault
from mower.core.state import Behavior, OperatorCommand
from mower.perception.classes import ObjectClass


def make_machine(config, actuator, seed=1, **kwargs):
    drive = DriveController(config.drive, actuator)
    return BehaviorStateMachine(config, drive, rng=random.Random(seed), unit_id=1, **kwargs)


@pytest.fixture
def machine(mowing_config, actuator):
    return make_machine(mowing_config, actuator)


def pylon(distance_m=0.5, bearing_deg=0.0, target_id=1, now=0.0):
    return make_target(ObjectClass.PYLON, target_id=target_id, bearing_deg=bearing_deg, distance_m=distance_m, timestamp=now)


class TestMowing:
    """Tests for random-walk mowing and pylon turns."""

    def test_initial_behavior_follows_mode(self, machine, animal_config, actuator):
        assert machine.behavior == Behavior.MOWING
        assert make_machine(animal_config, actuator).behavior == Behavior.MONITOR_ANIMAL

    def test_mowing_drives_with_blade(self, machine):
        command = machine.tick(make_snapshot(0.0), readings(0.0), 0.0)

        assert command.linear_mps > 0
        assert command.blade_on
        assert machine.state.blade_on

    def test_close_pylon_ahead_triggers_turn(self, machine):
        """Pylon at 0 deg below the proximity threshold starts a bounded turn."""
        cfg = machine.config
        command = machine.tick(make_snapshot(0.0, pylon(0.5)), readings(0.0), 0.0)

        assert machine.behavior == Behavior.TURNING
        assert cfg.turn_min_deg <= abs(machine.last_turn_angle) <= cfg.turn_max_deg
        assert command.linear_mps == pytest.approx(0.0)
        assert command.turn_rate_dps != 0.0

    def test_turn_angles_within_bounds(self, mowing_config, actuator):
        cfg = mowing_config.behavior
        for seed in range(30):
            machine = make_machine(mowing_config, actuator, seed=seed)
            machine.tick(make_snapshot(0.0, pylon(0.4)), readings(0.0), 0.0)
            assert cfg.turn_min_deg <= abs(machine.last_turn_angle) <= cfg.turn_max_deg

    def test_pylon_outside_cone_ignored(self, machine):
        machine.tick(make_snapshot(0.0, pylon(0.3, bearing_deg=45.0)), readings(0.0), 0.0)
        assert machine.behavior == Behavior.MOWING

    def test_distant_pylon_ignored(self, machine):
        machine.tick(make_snapshot(0.0, pylon(2.0)), readings(0.0), 0.0)
        assert machine.behavior == Behavior.MOWING

    def test_peer_mower_triggers_turn(self, machine):
        peer = make_target(ObjectClass.MOWER, target_id=4, distance_m=0.4)
        machine.tick(make_snapshot(0.0, peer), readings(0.0), 0.0)
        assert machine.behavior == Behavior.TURNING

    def test_turn_completes_at_target_heading(self, machine):
        machine.tick(make_snapshot(0.0, pylon(0.5)), readings(0.0), 0.0)
        target_heading = machine.last_turn_angle % 360.0

        machine.tick(make_snapshot(0.5), readings(0.5, heading_deg=target_heading), 0.5)

        assert machine.behavior == Behavior.MOWING

    def test_turn_times_out(self, machine):
        """A turn that never reaches its heading ends after the timeout."""
        machine.tick(make_snapshot(0.0, pylon(0.5)), readings(0.0), 0.0)

        machine.tick(make_snapshot(5.9), readings(5.9), 5.9)
        assert machine.behavior == Behavior.TURNING

        machine.tick(make_snapshot(6.0), readings(6.0), 6.0)
        assert machine.behavior == Behavior.MOWING

    def test_same_pylon_does_not_retrigger_within_cooldown(self, machine):
        """Continuous sightings of one pylon produce a single turn per cooldown."""
        machine.tick(make_snapshot(0.0, pylon(0.5)), readings(0.0), 0.0)
        heading = machine.last_turn_angle % 360.0

        for i in range(1, 30):
            now = i / 10.0
            machine.tick(make_snapshot(now, pylon(0.5, now=now)), readings(now, heading_deg=heading), now)

        assert machine.transition_counts[(Behavior.MOWING, Behavior.TURNING)] == 1
        assert machine.behavior == Behavior.MOWING

        machine.tick(make_snapshot(3.0, pylon(0.5, now=3.0)), readings(3.0, heading_deg=heading), 3.0)
        assert machine.transition_counts[(Behavior.MOWING, Behavior.TURNING)] == 2

    def test_different_pylon_triggers_during_cooldown(self, machine):
        machine.tick(make_snapshot(0.0, pylon(0.5, target_id=1)), readings(0.0), 0.0)
        heading = machine.last_turn_angle % 360.0
        machine.tick(make_snapshot(0.5), readings(0.5, heading_deg=heading), 0.5)

        machine.tick(make_snapshot(1.0, pylon(0.5, target_id=2)), readings(1.0, heading_deg=heading), 1.0)
        assert machine.behavior == Behavior.TURNING

    def test_person_ahead_holds_with_blade_off(self, machine):
        person = make_target(ObjectClass.PERSON, distance_m=2.0)
        command = machine.tick(make_snapshot(0.0, person), readings(0.0), 0.0)

        assert command.is_stop
        assert machine.behavior == Behavior.MOWING

    def test_distant_person_does_not_stop(self, machine):
        person = make_target(ObjectClass.PERSON, distance_m=6.0)
        command = machine.tick(make_snapshot(0.0, person), readings(0.0), 0.0)
        assert not command.is_stop

    def test_swarm_biases_turn_direction(self, mowing_config, actuator):
        swarm = MagicMock(spec=SwarmCoordinator)
        swarm.choose_heading.side_effect = lambda heading, offsets: offsets[-1]
        machine = make_machine(mowing_config, actuator, swarm=swarm)

        machine.tick(make_snapshot(0.0, pylon(0.5)), readings(0.0), 0.0)

        _, offsets = swarm.choose_heading.call_args_list[0].args
        assert offsets == [-offsets[1], offsets[1]]
        assert machine.last_turn_angle == offsets[1]


class TestPerceptionLoss:
    """Tests for stale perception handling."""

    def test_short_staleness_keeps_mowing(self, machine):
        machine.tick(make_snapshot(0.0, stale_for=1.0), readings(0.0), 0.0)
        assert machine.behavior == Behavior.MOWING

    def test_escape_sequence(self, machine):
        """Reverse with blade off, spin, then hold."""
        command = machine.tick(make_snapshot(10.0, stale_for=1.6), readings(10.0), 10.0)
        assert machine.behavior == Behavior.ESCAPING
        assert command.linear_mps < 0
        assert not command.blade_on

        command = machine.tick(make_snapshot(11.9, stale_for=3.5), readings(11.9), 11.9)
        assert command.linear_mps < 0

        command = machine.tick(make_snapshot(12.5, stale_for=4.1), readings(12.5), 12.5)
        assert command.linear_mps == pytest.approx(0.0)
        assert command.turn_rate_dps != 0.0

        command = machine.tick(make_snapshot(13.5, stale_for=5.1), readings(13.5), 13.5)
        assert command.is_stop
        assert machine.behavior == Behavior.ESCAPING

    def test_recovered_perception_resumes_mowing(self, machine):
        machine.tick(make_snapshot(10.0, stale_for=1.6), readings(10.0), 10.0)
        command = machine.tick(make_snapshot(10.5), readings(10.5), 10.5)

        assert machine.behavior == Behavior.MOWING
        assert command.blade_on

    def test_long_staleness_faults_then_recovers(self, machine):
        machine.tick(make_snapshot(10.0, stale_for=1.6), readings(10.0), 10.0)
        command = machine.tick(make_snapshot(18.5, stale_for=10.1), readings(18.5), 18.5)

        assert machine.behavior == Behavior.FAULT
        assert command.is_stop
        assert FaultType.PERCEPTION_STALE in machine.state.faults

        machine.tick(make_snapshot(19.0), readings(19.0), 19.0)
        assert machine.behavior == Behavior.MOWING
        assert not machine.drive.estopped


class TestFaults:
    """Tests for sensor faults and fault clearing."""

    def test_bumper_stops_before_fault_transition(self, machine, actuator):
        """The emergency stop is written before the machine enters FAULT."""
        seen = []
        machine.on_transition(lambda old, new, now: seen.append((new, actuator.last)))

        command = machine.tick(make_snapshot(0.0), readings(0.0, bumper=True), 0.0)

        assert command.emergency
        assert machine.behavior == Behavior.FAULT
        new, last_written = seen[-1]
        assert new == Behavior.FAULT
        assert last_written.emergency
        assert machine.fault_history[0].fault_type == FaultType.BUMPER

    def test_fault_is_stationary(self, machine):
        machine.tick(make_snapshot(0.0), readings(0.0, bumper=True), 0.0)
        for i in range(1, 10):
            now = float(i)
            command = machine.tick(make_snapshot(now), readings(now), now)
            assert command.is_stop
        assert machine.behavior == Behavior.FAULT

    def test_bumper_fault_is_latched(self, machine):
        machine.tick(make_snapshot(0.0), readings(0.0, bumper=True), 0.0)
        machine.tick(make_snapshot(1.0), readings(1.0), 1.0)

        assert machine.behavior == Behavior.FAULT
        assert machine.clear_fault(1.0)
        assert machine.behavior == Behavior.MOWING
        assert machine.fault_history[0].cleared

    def test_clear_blocked_while_condition_present(self, machine):
        machine.tick(make_snapshot(0.0), readings(0.0, bumper=True), 0.0)
        machine.tick(make_snapshot(1.0), readings(1.0, bumper=True), 1.0)

        machine.command(OperatorCommand.CLEAR_FAULT, 1.0)
        assert machine.behavior == Behavior.FAULT

    def test_tilt_fault(self, machine):
        machine.tick(make_snapshot(0.0), readings(0.0, roll_deg=40.0), 0.0)
        assert FaultType.TILT in machine.state.faults

    def test_overheat_hysteresis(self, machine):
        """Overheat clears itself only below the resume temperature."""
        machine.tick(make_snapshot(0.0), readings(0.0, cpu_temp_c=75.0), 0.0)
        assert machine.behavior == Behavior.FAULT

        machine.tick(make_snapshot(1.0), readings(1.0, cpu_temp_c=67.0), 1.0)
        assert machine.behavior == Behavior.FAULT

        machine.tick(make_snapshot(2.0), readings(2.0, cpu_temp_c=60.0), 2.0)
        assert machine.behavior == Behavior.MOWING

    def test_actuator_failure_faults(self, mowing_config):
        backend = MagicMock(spec=Actuator)
        backend.write.side_effect = OSError("motor driver offline")
        machine = make_machine(mowing_config, backend)

        command = machine.tick(make_snapshot(0.0), readings(0.0), 0.0)

        assert command.is_stop
        assert machine.behavior == Behavior.FAULT
        assert FaultType.ACTUATOR in machine.state.faults
        backend.stop.assert_called()

    def test_on_fault_callback(self, machine):
        events = []
        machine.on_fault(events.append)

        machine.tick(make_snapshot(0.0), readings(0.0, pitch_deg=-35.0), 0.0)

        assert [e.fault_type for e in events] == [FaultType.TILT]

    def test_callback_error_is_contained(self, machine):
        def broken(event):
            raise RuntimeError("callback bug")

        machine.on_fault(broken)
        machine.tick(make_snapshot(0.0), readings(0.0, bumper=True), 0.0)
        assert machine.behavior == Behavior.FAULT

    def test_check_sensors_lists_new_conditions(self, machine):
        machine.check_sensors(readings(0.0))
        with pytest.raises(SensorFault) as exc_info:
            machine.check_sensors(readings(0.0, bumper=True, cpu_temp_c=75.0))
        assert set(exc_info.value.faults) == {FaultType.BUMPER, FaultType.OVERHEAT}

    def test_check_sensors_skips_active_faults(self, machine):
        machine.tick(make_snapshot(0.0), readings(0.0, bumper=True), 0.0)
        machine.check_sensors(readings(1.0, bumper=True))


class TestBattery:
    """Tests for the charging hysteresis."""

    def test_monitor_person_charges_and_resumes(self, person_config, actuator):
        machine = make_machine(person_config, actuator)
        machine.tick(make_snapshot(0.0), readings(0.0, battery_percent=50.0), 0.0)
        assert machine.behavior == Behavior.MONITOR_PERSON

        machine.tick(make_snapshot(1.0), readings(1.0, battery_percent=15.0), 1.0)
        assert machine.behavior == Behavior.CHARGING

        machine.tick(make_snapshot(2.0), readings(2.0, battery_percent=50.0), 2.0)
        assert machine.behavior == Behavior.CHARGING

        machine.tick(make_snapshot(3.0), readings(3.0, battery_percent=85.0), 3.0)
        assert machine.behavior == Behavior.MONITOR_PERSON

    def test_charging_is_stationary(self, machine):
        command = machine.tick(make_snapshot(0.0, pylon(0.3)), readings(0.0, battery_percent=10.0), 0.0)

        assert machine.behavior == Behavior.CHARGING
        assert command.is_stop

    def test_mowing_resumes_after_charge(self, machine):
        machine.tick(make_snapshot(0.0), readings(0.0, battery_percent=10.0), 0.0)
        command = machine.tick(make_snapshot(1.0), readings(1.0, battery_percent=90.0), 1.0)

        assert machine.behavior == Behavior.MOWING
        assert command.blade_on

    def test_monitor_keeps_notifying_while_charging(self, animal_config, actuator):
        """A monitoring appliance on a low battery still reports detections."""
        notifier = MagicMock(spec=NotificationDispatcher)
        machine = make_machine(animal_config, actuator, notifier=notifier)
        bear = make_target(ObjectClass.BEAR, target_id=1, distance_m=4.0)

        command = machine.tick(make_snapshot(0.0, bear), readings(0.0, battery_percent=10.0), 0.0)

        assert machine.behavior == Behavior.CHARGING
        assert command.is_stop
        notifier.notify.assert_called_once()
        label, evidence = notifier.notify.call_args.args
        assert label == ObjectClass.BEAR
        assert evidence.mode == "monitor_animal"

    def test_charging_after_operator_off_stays_silent(self, animal_config, actuator):
        notifier = MagicMock(spec=NotificationDispatcher)
        machine = make_machine(animal_config, actuator, notifier=notifier)
        machine.command(OperatorCommand.OFF, 0.0)
        bear = make_target(ObjectClass.BEAR, target_id=1, distance_m=4.0)

        machine.tick(make_snapshot(1.0, bear), readings(1.0, battery_percent=10.0), 1.0)

        assert machine.behavior == Behavior.CHARGING
        notifier.notify.assert_not_called()


class TestMonitor:
    """Tests for stationary monitor modes."""

    def test_animal_mode_notifies_animals_only(self, animal_config, actuator):
        notifier = MagicMock(spec=NotificationDispatcher)
        machine = make_machine(animal_config, actuator, notifier=notifier)
        snapshot = make_snapshot(
            0.0,
            make_target(ObjectClass.FOX, target_id=1, distance_m=3.0),
            make_target(ObjectClass.PERSON, target_id=2, distance_m=2.0),
            make_target(ObjectClass.PYLON, target_id=3, distance_m=1.0),
        )

        command = machine.tick(snapshot, readings(0.0), 0.0)

        assert command.is_stop
        notifier.notify.assert_called_once()
        label, evidence = notifier.notify.call_args.args
        assert label == ObjectClass.FOX
        assert evidence.unit_id == 1
        assert evidence.mode == "monitor_animal"

    def test_person_mode_notifies_people_only(self, person_config, actuator):
        notifier = MagicMock(spec=NotificationDispatcher)
        machine = make_machine(person_config, actuator, notifier=notifier)
        snapshot = make_snapshot(
            0.0,
            make_target(ObjectClass.BEAR, target_id=1, distance_m=3.0),
            make_target(ObjectClass.PERSON, target_id=2, distance_m=4.0),
        )

        machine.tick(snapshot, readings(0.0), 0.0)

        assert [c.args[0] for c in notifier.notify.call_args_list] == [ObjectClass.PERSON]

    def test_monitor_never_moves(self, animal_config, actuator):
        machine = make_machine(animal_config, actuator)
        rng = random.Random(5)
        for i in range(50):
            now = i * 0.1
            targets = [
                make_target(rng.choice(list(ObjectClass)), target_id=j, distance_m=rng.uniform(0.2, 5.0))
                for j in range(rng.randint(0, 3))
            ]
            command = machine.tick(make_snapshot(now, *targets), readings(now), now)
            assert command.is_stop


class TestOperatorAndConfig:
    """Tests for operator commands and configuration swaps."""

    def test_off_and_on(self, machine):
        machine.command(OperatorCommand.OFF, 0.0)
        command = machine.tick(make_snapshot(0.0), readings(0.0), 0.0)
        assert machine.behavior == Behavior.IDLE
        assert command.is_stop

        machine.command(OperatorCommand.ON, 1.0)
        assert machine.behavior == Behavior.MOWING

    def test_off_while_charging_rests_idle(self, machine):
        machine.tick(make_snapshot(0.0), readings(0.0, battery_percent=10.0), 0.0)
        machine.command(OperatorCommand.OFF, 0.5)
        machine.tick(make_snapshot(1.0), readings(1.0, battery_percent=90.0), 1.0)

        assert machine.behavior == Behavior.IDLE

    def test_apply_config_switches_mode(self, machine):
        machine.apply_config(MowerConfig.for_simulation(unit_id=1, mode=OperatingMode.MONITOR_ANIMAL), 0.0)
        command = machine.tick(make_snapshot(0.0), readings(0.0), 0.0)

        assert machine.behavior == Behavior.MONITOR_ANIMAL
        assert command.is_stop

    def test_apply_config_changes_thresholds(self, machine, mowing_config):
        config = mowing_config.with_overrides(behavior=BehaviorConfig(pylon_proximity_m=3.0))
        machine.apply_config(config, 0.0)

        machine.tick(make_snapshot(0.0, pylon(2.0)), readings(0.0), 0.0)
        assert machine.behavior == Behavior.TURNING

    def test_state_is_a_copy(self, machine):
        state = machine.state
        state.faults.add(FaultType.BUMPER)
        assert machine.state.faults == set()

    def test_unit_id_follows_swarm_identity(self, mowing_config, actuator):
        swarm = MagicMock(spec=SwarmCoordinator)
        swarm.unit_id = 17
        machine = make_machine(mowing_config, actuator, swarm=swarm)

        assert machine.unit_id == 17
        swarm.unit_id = 42
        assert machine.unit_id == 42


class TestAnnouncements:
    """Tests for audible announcements."""

    def test_pylon_turn_announced(self, mowing_config, actuator):
        speaker = RecordingSpeaker()
        machine = make_machine(mowing_config, actuator, speaker=speaker)

        machine.tick(make_snapshot(0.0, pylon(0.5)), readings(0.0), 0.0)

        assert machine.behavior == Behavior.TURNING
        assert speaker.spoken == [Announcement.CLOSE_TO_CONE]

    def test_monitor_detection_rate_limited(self, animal_config, actuator):
        speaker = RecordingSpeaker()
        machine = make_machine(animal_config, actuator, speaker=speaker)

        for now in (0.0, 1.0, 2.0, 12.0):
            fox = make_target(ObjectClass.FOX, target_id=1, distance_m=3.0, timestamp=now)
            machine.tick(make_snapshot(now, fox), readings(now), now)

        assert speaker.spoken == [Announcement.ANIMAL_DETECTING, Announcement.ANIMAL_DETECTING]

    def test_person_mode_announces_person(self, person_config, actuator):
        speaker = RecordingSpeaker()
        machine = make_machine(person_config, actuator, speaker=speaker)

        machine.tick(make_snapshot(0.0, make_target(ObjectClass.PERSON, distance_m=2.0)), readings(0.0), 0.0)

        assert speaker.spoken == [Announcement.PERSON_DETECTING]

    def test_faults_announced(self, mowing_config, actuator):
        speaker = RecordingSpeaker()
        machine = make_machine(mowing_config, actuator, speaker=speaker)

        machine.tick(make_snapshot(0.0), readings(0.0, bumper=True, cpu_temp_c=75.0), 0.0)

        assert set(speaker.spoken) == {Announcement.BUMPED, Announcement.HIGH_TEMP}

    def test_stale_fault_and_recovery_announced(self, mowing_config, actuator):
        speaker = RecordingSpeaker()
        machine = make_machine(mowing_config, actuator, speaker=speaker)

        machine.tick(make_snapshot(10.0, stale_for=1.6), readings(10.0), 10.0)
        machine.tick(make_snapshot(18.5, stale_for=10.1), readings(18.5), 18.5)
        assert speaker.spoken == [Announcement.CONE_NOT_FOUND]

        machine.tick(make_snapshot(19.0), readings(19.0), 19.0)
        assert machine.behavior == Behavior.MOWING
        assert speaker.spoken[-1] == Announcement.START_MOWING

    def test_speaker_error_is_contained(self, mowing_config, actuator):
        speaker = MagicMock(spec=Speaker)
        speaker.say.side_effect = OSError("no audio device")
        machine = make_machine(mowing_config, actuator, speaker=speaker)

        command = machine.tick(make_snapshot(0.0), readings(0.0, bumper=True), 0.0)

        assert command.emergency
        assert machine.behavior == Behavior.FAULT
