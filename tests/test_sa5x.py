import pytest

from oscillatord.sa5x import (
    AttributeSet,
    Sa5xAttributes,
    Sa5xClockClass,
    Sa5xError,
    Sa5xOscillator,
    Sa5xState,
    parse_int_answer,
    parse_phase_answer,
)


class FakePort:
    def __init__(self, replies=None):
        self.replies = dict(replies or {})
        self.written = []
        self.pending = b""
        self.timeout = 1.0
        self.closed = False

    def write(self, data):
        data = bytes(data)
        self.written.append(data)
        reply = self.replies.get(data, b"")
        if isinstance(reply, list):
            reply = reply.pop(0) if reply else b""
        self.pending = reply
        return len(data)

    def read(self, size):
        chunk, self.pending = self.pending[:size], self.pending[size:]
        return chunk

    def close(self):
        self.closed = True


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def ans(text):
    return f"[={text}]\r\n".encode()


OK = ans("1")


def make(replies=None, now=1000.0):
    port = FakePort(replies)
    clock = FakeClock(now)
    return Sa5xOscillator(port=port, clock=clock), port, clock


def test_parse_int_answer():
    assert parse_int_answer("[=42]\r\n") == 42
    assert parse_int_answer("[=-7]\r\n") == -7


def test_parse_int_answer_rejects_garbage():
    with pytest.raises(ValueError):
        parse_int_answer("[=abc]\r\n")


def test_parse_phase_answer_rounds_away_from_zero():
    assert parse_phase_answer("[=2.5]\r\n") == 3
    assert parse_phase_answer("[=-2.5]\r\n") == -3
    assert parse_phase_answer("[=1.4]\r\n") == 1


def test_parse_phase_answer_rejects_garbage():
    with pytest.raises(ValueError):
        parse_phase_answer("[=x]\r\n")


def test_init_resets_tau_and_sends_queries_with_nul():
    osc, port, _ = make()
    assert b"{set,TauPps0,50}" in port.written
    assert b"{get,PhaseLimit}\x00" in port.written
    status = osc.get_disciplining_status()
    assert status.clock_class == Sa5xClockClass.CALIBRATING
    assert status.status == Sa5xState.INIT
    assert status.current_phase_convergence_count == -1


def test_firmware_info_fixed_latch():
    osc, _, _ = make({
        b"\\{swrev?}\x00": b"[=V1.1,extra]\r\n",
        b"{serial?}\x00": b"[=ABCDEFGHIJK]\r\n",
        b"{get,PhaseLimit}\x00": ans("100000"),
    })
    assert osc.version == "V1.1"
    assert osc.serial == "ABCDEFGHIJK"
    assert osc.latch_fixed is True


def test_firmware_info_old_version_not_fixed():
    osc, _, _ = make({b"\\{swrev?}\x00": b"[=V1.0,extra]\r\n"})
    assert osc.version == "V1.0"
    assert osc.latch_fixed is False


def test_non_default_phase_limit_is_updated():
    _, port, _ = make({b"{get,PhaseLimit}\x00": ans("5")})
    assert b"{set,PhaseLimit,100000}" in port.written


def test_default_phase_limit_left_alone():
    _, port, _ = make({b"{get,PhaseLimit}\x00": ans("100000")})
    assert not any(w.startswith(b"{set,PhaseLimit") for w in port.written)


def test_command_errors():
    osc, port, _ = make()
    port.replies[b"bad"] = b"xx=1]\r\n"
    port.replies[b"err"] = b"[!bad]\r\n"
    port.replies[b"short"] = b"[=1"
    with pytest.raises(Sa5xError):
        osc.command("bad")
    with pytest.raises(Sa5xError):
        osc.command("err")
    with pytest.raises(Sa5xError):
        osc.command("short")
    with pytest.raises(Sa5xError):
        osc.command("nothing")


def test_command_returns_answer():
    osc, port, _ = make()
    port.replies[b"{get,Phase}\x00"] = ans("3.0")
    assert osc.command("{get,Phase}\x00") == "[=3.0]\r\n"
    assert port.written[-1] == b"{get,Phase}\x00"


def test_parse_attributes():
    osc, port, _ = make()
    port.replies.update({
        b"{get,Temperature}\x00": ans("25000"),
        b"{get,PpsInDetected}\x00": ans("1"),
        b"{get,DisciplineLocked}\x00": ans("1"),
    })
    attrs = osc.parse_attributes()
    assert attrs.temperature == pytest.approx(25.0)
    assert attrs.locked is True


def test_parse_attributes_failure_reports_unknown_temperature():
    osc, _, _ = make()
    attrs = osc.parse_attributes()
    assert attrs.temperature == -400.0
    assert attrs.locked is False


def test_get_attributes_requires_pps_status():
    osc, _, _ = make()
    with pytest.raises(Sa5xError):
        osc.get_attributes(AttributeSet.STATUS_PPS)


def test_get_attributes_enables_disciplining_when_phase_zero():
    osc, port, _ = make()
    port.replies.update({
        b"{get,PpsInDetected}\x00": ans("1"),
        b"{get,Disciplining}\x00": ans("0"),
        b"{get,Phase}\x00": ans("0.2"),
        b"{set,Disciplining,1}": OK,
    })
    attrs = osc.get_attributes(AttributeSet.STATUS)
    assert attrs.disciplining is False
    assert attrs.phase_offset == 0
    assert b"{set,Disciplining,1}" in port.written


def test_get_attributes_fw_serial_reads_version():
    osc, port, _ = make()
    port.replies[b"\\{swrev?}\x00"] = b"[=V2.0,extra]\r\n"
    attrs = osc.get_attributes(AttributeSet.FW_SERIAL)
    assert attrs == Sa5xAttributes()
    assert osc.version == "V2.0"


def test_get_phase_error():
    osc, port, _ = make()
    port.replies[b"{get,Phase}\x00"] = ans("-12.6")
    assert osc.get_phase_error() == -13


def test_get_phase_error_failure():
    osc, _, _ = make()
    with pytest.raises(Sa5xError):
        osc.get_phase_error()


def test_get_ctrl_failure_values():
    osc, _, _ = make()
    ctrl = osc.get_ctrl()
    assert (ctrl.fine_ctrl, ctrl.coarse_ctrl) == (-1, 0)


def _tracking_replies():
    return {
        b"{get,DisciplineLocked}\x00": ans("1"),
        b"{get,PpsInDetected}\x00": ans("1"),
        b"{get,DigitalTuning}\x00": ans("100"),
        b"{get,Locked}\x00": ans("1"),
        b"{get,TauPps0}\x00": ans("50"),
        b"{get,LastCorrection}\x00": ans("7"),
        b"{get,Alarms}\x00": ans("0"),
        b"{get,Disciplining}\x00": ans("1"),
        b"{get,Phase}\x00": ans("0.0"),
        b"{set,TauPps0,500}": OK,
    }


def test_get_ctrl_advances_disciplining_phase():
    osc, port, clock = make()
    port.replies.update(_tracking_replies())
    osc.push_gnss_info(True, (0, 0))
    clock.now += 700
    ctrl = osc.get_ctrl()
    assert (ctrl.fine_ctrl, ctrl.coarse_ctrl) == (7, 50)
    assert osc.disciplining_phase == 1
    assert b"{set,TauPps0,500}" in port.written
    status = osc.get_disciplining_status()
    assert status.clock_class == Sa5xClockClass.LOCK
    assert status.status == Sa5xState.CALIBRATION
    assert status.holdover_ready is False


def test_get_ctrl_stays_before_interval():
    osc, port, clock = make()
    port.replies.update(_tracking_replies())
    osc.push_gnss_info(True, (0, 0))
    clock.now += 100
    osc.get_ctrl()
    assert osc.disciplining_phase == 0
    assert osc.get_disciplining_status().status == Sa5xState.INIT


def test_get_ctrl_long_without_gnss_goes_uncalibrated():
    osc, port, _ = make(now=100000.0)
    port.replies.update(_tracking_replies())
    port.replies[b"{set,TauPps0,50}"] = OK
    osc.get_ctrl()
    status = osc.get_disciplining_status()
    assert status.clock_class == Sa5xClockClass.UNCALIBRATED
    assert status.status == Sa5xState.HOLDOVER
    assert osc.disciplining_phase == 0


def test_latch_success():
    osc, port, clock = make()
    port.replies.update({
        b"{set,Disciplining,0}": OK,
        b"{get,Disciplining}\x00": ans("0"),
        b"{latch}\x00": ans("1"),
    })
    attrs = Sa5xAttributes(disciplining=True)
    assert osc.latch(attrs) is True
    assert attrs.disciplining is False
    assert osc.mac_last_latch == int(clock.now)
    assert b"{latch}\x00" in port.written


def test_latch_returns_zero_fails():
    osc, port, _ = make()
    port.replies[b"{latch}\x00"] = ans("0")
    assert osc.latch(Sa5xAttributes(disciplining=False)) is False


def test_latch_cannot_disable_disciplining():
    osc, port, _ = make()
    port.replies.update({
        b"{set,Disciplining,0}": OK,
        b"{get,Disciplining}\x00": ans("1"),
    })
    assert osc.latch(Sa5xAttributes(disciplining=True)) is False
    assert b"{latch}\x00" not in port.written


def test_disciplining_status_is_a_copy():
    osc, _, _ = make()
    status = osc.get_disciplining_status()
    status.holdover_ready = True
    assert osc.get_disciplining_status().holdover_ready is False


def test_push_gnss_info():
    osc, _, clock = make()
    clock.now = 4242.0
    osc.push_gnss_info(True, (10, 20))
    assert osc.gnss_fix_status is True
    assert osc.gnss_last_fix == 4242
    assert osc.gnss_last_fix_utc == (10, 20)
    osc.push_gnss_info(False, (30, 40))
    assert osc.gnss_fix_status is False
    assert osc.gnss_last_fix_utc == (10, 20)


def test_close_closes_port():
    osc, port, _ = make()
    osc.close()
    assert port.closed is True
    with pytest.raises(Sa5xError):
        osc.command("{get,Phase}\x00")