#!/usr/bin/env python3
"""Tests for pipeline.py - command records, commands and the runner."""

import sys
from contextlib import contextmanager
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import CommandState, StepResult
from errors import ApplyFailed, InvalidTransition
from pipeline import SESSION_KEY, Command, CommandRecord, PipelineRunner


def ok_step(message='', **updates):
    def step(data, job, scope):
        return StepResult(success=True, message=message, context_updates=updates)
    return step


def failing_step(message):
    def step(data, job, scope):
        return StepResult(success=False, message=message)
    return step


def raising_step(exc):
    def step(data, job, scope):
        raise exc
    return step


class RecordingCommand(Command):
    """Command that counts how often it was executed."""

    def __init__(self, name, steps, **kwargs):
        super().__init__(name=name, description=f'{name} description', steps=steps, **kwargs)
        self.invocations = 0

    def execute(self, data, job, record, history=None):
        self.invocations += 1
        return super().execute(data, job, record, history)


class TestCommandRecord:
    """Test the command state machine."""

    def test_initial_state(self):
        record = CommandRecord(command='c')
        assert record.state is CommandState.UNKNOWN
        assert record.version == 0

    def test_transitions_increment_version(self):
        record = CommandRecord(command='c')
        running = record.transition(CommandState.RUNNING)
        done = running.transition(CommandState.SUCCESS, 'ok')
        assert (record.version, running.version, done.version) == (0, 1, 2)
        assert done.state is CommandState.SUCCESS
        assert record.state is CommandState.UNKNOWN  # original unchanged

    def test_cancel_before_start(self):
        record = CommandRecord(command='c').transition(CommandState.CANCELLED)
        assert record.state.is_terminal

    @pytest.mark.parametrize('terminal', [CommandState.SUCCESS, CommandState.HAS_ERROR, CommandState.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        """No transition may leave a terminal state."""
        record = CommandRecord(command='c').transition(CommandState.RUNNING).transition(terminal)
        for state in CommandState:
            with pytest.raises(InvalidTransition):
                record.transition(state)

    def test_unknown_cannot_succeed_directly(self):
        with pytest.raises(InvalidTransition) as exc_info:
            CommandRecord(command='c').transition(CommandState.SUCCESS)
        assert exc_info.value.code == 'E601'

    def test_outputs_exclude_private_keys(self):
        record = CommandRecord(command='c').transition(CommandState.RUNNING)
        updated = record.with_outputs({'manifests': [1], '_session': object()})
        assert dict(updated.outputs) == {'manifests': [1]}
        assert updated.version == record.version + 1

    def test_outputs_immutable(self):
        record = CommandRecord(command='c').transition(CommandState.RUNNING).with_outputs({'a': 1})
        with pytest.raises(TypeError):
            record.outputs['b'] = 2

    def test_successor_continues_version(self):
        record = CommandRecord(command='a').transition(CommandState.RUNNING).with_outputs({'x': 1})
        done = record.transition(CommandState.SUCCESS)
        nxt = done.successor('b')
        assert nxt.command == 'b'
        assert nxt.state is CommandState.UNKNOWN
        assert nxt.version == done.version + 1
        assert nxt.outputs['x'] == 1


class TestCommand:
    """Test step execution inside one command."""

    def test_steps_run_in_order(self, job, kube_data):
        order = []

        def step(name):
            def fn(data, j, scope):
                order.append(name)
                return StepResult(success=True)
            return fn

        cmd = Command('c', 'desc', [('one', step('one'), ''), ('two', step('two'), '')])
        record = cmd.execute(kube_data, job, CommandRecord(command='c'))
        assert order == ['one', 'two']
        assert record.state is CommandState.SUCCESS

    def test_failed_step_stops_command(self, job, kube_data):
        later = RecordingCommand('later', [])
        cmd = Command('c', 'desc', [
            ('fail', failing_step('nope'), ''),
            ('never', lambda d, j, s: later.execute(d, j, CommandRecord(command='later')), ''),
        ])
        record = cmd.execute(kube_data, job, CommandRecord(command='c'))
        assert record.state is CommandState.HAS_ERROR
        assert record.message == 'nope'
        assert later.invocations == 0

    def test_deploy_error_recorded_with_code(self, job, kube_data):
        error = ApplyFailed('k8s/x.yml', 'rejected')
        cmd = Command('c', 'desc', [('apply', raising_step(error), '')])
        record = cmd.execute(kube_data, job, CommandRecord(command='c'))
        assert record.state is CommandState.HAS_ERROR
        assert record.message.startswith('E401:')
        assert record.error is error

    def test_unexpected_exception_recorded(self, job, kube_data):
        cmd = Command('c', 'desc', [('boom', raising_step(ValueError('bad name')), '')])
        record = cmd.execute(kube_data, job, CommandRecord(command='c'))
        assert record.state is CommandState.HAS_ERROR
        assert 'bad name' in record.message

    def test_keyboard_interrupt_cancels(self, job, kube_data):
        cmd = Command('c', 'desc', [('wait', raising_step(KeyboardInterrupt()), '')])
        record = cmd.execute(kube_data, job, CommandRecord(command='c'))
        assert record.state is CommandState.CANCELLED

    def test_session_scoped_to_command(self, job, kube_data):
        """The session is opened once, visible to steps, and closed after."""
        events = []

        @contextmanager
        def session(data, j):
            events.append('open')
            yield 'SESSION'
            events.append('close')

        def uses_session(data, j, scope):
            events.append(scope[SESSION_KEY])
            return StepResult(success=True)

        cmd = Command('c', 'desc', [('use', uses_session, '')], session=session)
        record = cmd.execute(kube_data, job, CommandRecord(command='c'))
        assert events == ['open', 'SESSION', 'close']
        assert SESSION_KEY not in record.outputs

    def test_session_closed_when_step_raises(self, job, kube_data):
        events = []

        @contextmanager
        def session(data, j):
            try:
                yield 'SESSION'
            finally:
                events.append('close')

        cmd = Command('c', 'desc', [('boom', raising_step(RuntimeError('x')), '')], session=session)
        cmd.execute(kube_data, job, CommandRecord(command='c'))
        assert events == ['close']

    def test_history_records_every_version(self, job, kube_data):
        history = []
        cmd = Command('c', 'desc', [('a', ok_step(out=1), ''), ('b', ok_step(), '')])
        cmd.execute(kube_data, job, CommandRecord(command='c'), history)
        versions = [r.version for r in history]
        assert versions == sorted(versions)
        assert [r.state for r in history] == [CommandState.RUNNING, CommandState.RUNNING, CommandState.SUCCESS]


class TestPipelineRunner:
    """Test sequencing across commands."""

    def test_all_succeed(self, job, kube_data):
        commands = [RecordingCommand(n, [('s', ok_step(**{n: True}), '')]) for n in ('a', 'b', 'c')]
        result = PipelineRunner().run(job, kube_data, commands)
        assert result.success is True
        assert result.failed_command is None
        assert [r.state for r in result.records] == [CommandState.SUCCESS] * 3
        assert dict(result.outputs) == {'a': True, 'b': True, 'c': True}

    def test_second_failure_skips_third(self, job, kube_data):
        """Command 3 must never run once command 2 failed."""
        first = RecordingCommand('first', [('s', ok_step(), '')])
        second = RecordingCommand('second', [('s', failing_step('cluster said no'), '')])
        third = RecordingCommand('third', [('s', ok_step(), '')])
        runner = PipelineRunner()

        result = runner.run(job, kube_data, [first, second, third])

        assert result.success is False
        assert result.failed_command == 'second'
        assert result.message == 'cluster said no'
        assert third.invocations == 0
        assert [p.status for p in runner.report.phases] == ['passed', 'failed', 'skipped']
        assert job.last_result.command == 'second'
        assert job.last_result.state is CommandState.HAS_ERROR

    def test_outputs_threaded_forward(self, job, kube_data):
        seen = {}

        def reader(data, j, scope):
            seen['value'] = scope.get('token_count')
            return StepResult(success=True)

        commands = [
            Command('producer', 'd', [('s', ok_step(token_count=2), '')]),
            Command('consumer', 'd', [('s', reader, '')]),
        ]
        PipelineRunner().run(job, kube_data, commands)
        assert seen['value'] == 2

    def test_versions_monotonic_across_run(self, job, kube_data):
        commands = [Command(n, 'd', [('s', ok_step(), '')]) for n in ('a', 'b')]
        runner = PipelineRunner()
        runner.run(job, kube_data, commands)
        versions = [r.version for r in runner.history]
        assert versions == list(range(len(versions)))

    def test_cancelled_command_halts(self, job, kube_data):
        third = RecordingCommand('third', [])
        commands = [
            Command('a', 'd', [('s', raising_step(KeyboardInterrupt()), '')]),
            third,
        ]
        result = PipelineRunner().run(job, kube_data, commands)
        assert result.success is False
        assert result.cancelled is True
        assert third.invocations == 0

    def test_report_written(self, job, kube_data, tmp_path):
        report_dir = tmp_path / 'reports'
        PipelineRunner(report_dir=report_dir).run(job, kube_data, [Command('a', 'd', [('s', ok_step(), '')])])
        assert len(list(report_dir.glob('*.test-run.passed.json'))) == 1
        assert len(list(report_dir.glob('*.test-run.passed.md'))) == 1

    def test_preview_runs_nothing(self, job, kube_data, capsys):
        cmd = RecordingCommand('a', [('s', ok_step(), 'does a thing')])
        assert PipelineRunner().preview(kube_data, [cmd]) is True
        out = capsys.readouterr().out
        assert 'DRY-RUN' in out
        assert 'does a thing' in out
        assert cmd.invocations == 0
