#!/usr/bin/env python3
"""
test_protocol.py -- Frame decoding, duplicate suppression and command encoding.

Run:  python3 -m pytest distox/tests/test_protocol.py -v
"""

import pytest

from distox.errors import FramingError, InvalidArgument
from distox.protocol import (
    Command, DistoXProtocol, PacketType, build_ack, build_read_memory,
    build_start_calibration, build_start_silent, build_stop_calibration,
    build_stop_silent, build_write_memory, classify, decode_calibration_accel,
    decode_calibration_mag, decode_memory_reply, decode_sensor, hexdump, sequence_bit,
)


# ── Classification ─────────────────────────────────────────────────────────

class TestClassify:
    def test_known_types(self):
        assert classify(bytes([0x01] + [0] * 7)) is PacketType.MEASUREMENT
        assert classify(bytes([0x82] + [0] * 7)) is PacketType.CALIBRATION_ACCEL
        assert classify(bytes([0x03] + [0] * 7)) is PacketType.CALIBRATION_MAG
        assert classify(bytes([0x04] + [0] * 7)) is PacketType.VECTOR
        assert classify(bytes([0xB8] + [0] * 7)) is PacketType.MEMORY_REPLY

    def test_unknown_type_is_raw_int(self):
        kind = classify(bytes([0x3F] + [0] * 7))
        assert kind == 0x3F
        assert not isinstance(kind, PacketType)

    def test_empty_frame(self):
        with pytest.raises(FramingError):
            classify(b"")

    def test_sequence_bit(self):
        assert sequence_bit(bytes([0x01])) == 0
        assert sequence_bit(bytes([0x81])) == 1


# ── Measurement decoding ───────────────────────────────────────────────────

class TestDecodeMeasurement:
    def test_distance(self):
        m = DistoXProtocol().decode_measurement(bytes([0x01, 0xD2, 0x04, 0, 0, 0, 0, 0]))
        assert m.distance == pytest.approx(1.234)
        assert m.azimuth == 0.0
        assert m.inclination == 0.0
        assert m.sequence_bit == 0

    def test_azimuth_90(self):
        m = DistoXProtocol().decode_measurement(bytes([0x01, 0xE8, 0x03, 0, 0x40, 0, 0, 0]))
        assert m.distance == pytest.approx(1.0)
        assert m.azimuth == pytest.approx(90.0)

    def test_inclination_minus_90(self):
        m = DistoXProtocol().decode_measurement(bytes([0x01, 0xE8, 0x03, 0, 0, 0, 0xC0, 0]))
        assert m.inclination == pytest.approx(-90.0)

    def test_distance_bit_16(self):
        m = DistoXProtocol().decode_measurement(bytes([0x41, 0x00, 0x00, 0, 0, 0, 0, 0]))
        assert m.distance == pytest.approx(65.536)

    def test_roll(self):
        p = DistoXProtocol()
        assert p.decode_measurement(bytes([0x01, 1, 0, 0, 0, 0, 0, 0x40])).roll == pytest.approx(90.0)
        assert p.decode_measurement(bytes([0x01, 2, 0, 0, 0, 0, 0, 0xC0])).roll == pytest.approx(-90.0)

    def test_wrong_length(self):
        with pytest.raises(FramingError):
            DistoXProtocol().decode_measurement(bytes([0x01, 0, 0, 0, 0, 0, 0]))

    def test_wrong_type(self):
        with pytest.raises(FramingError):
            DistoXProtocol().decode_measurement(bytes([0x02] + [0] * 7))


class TestDuplicateSuppression:
    FRAME = bytes([0x01, 0xD2, 0x04, 0, 0x40, 0, 0, 0])

    def test_identical_frame_is_duplicate(self):
        p = DistoXProtocol()
        assert p.decode_measurement(self.FRAME) is not None
        assert p.decode_measurement(self.FRAME) is None

    def test_flipped_sequence_bit_is_new(self):
        p = DistoXProtocol()
        p.decode_measurement(self.FRAME)
        m = p.decode_measurement(bytes([0x81]) + self.FRAME[1:])
        assert m is not None
        assert m.sequence_bit == 1

    def test_same_bit_different_payload_is_new(self):
        p = DistoXProtocol()
        p.decode_measurement(self.FRAME)
        assert p.decode_measurement(bytes([0x01, 0xD3]) + self.FRAME[2:]) is not None

    def test_roll_does_not_count(self):
        p = DistoXProtocol()
        p.decode_measurement(self.FRAME)
        assert p.decode_measurement(self.FRAME[:7] + bytes([0x10])) is None

    def test_reset_forgets_last(self):
        p = DistoXProtocol()
        p.decode_measurement(self.FRAME)
        p.reset()
        assert p.decode_measurement(self.FRAME) is not None


# ── Calibration / memory frames ────────────────────────────────────────────

class TestSensorPackets:
    FRAME_G = bytes([0x82, 0xFF, 0xFF, 0xE8, 0x03, 0x00, 0x80, 7])

    def test_accel(self):
        pkt = decode_calibration_accel(self.FRAME_G)
        assert pkt.kind is PacketType.CALIBRATION_ACCEL
        assert (pkt.x, pkt.y, pkt.z) == (-1, 1000, -32768)
        assert pkt.number == 7
        assert pkt.sequence_bit == 1

    def test_mag(self):
        pkt = decode_calibration_mag(bytes([0x03, 0x10, 0x27, 0, 0, 0xF0, 0xD8, 56]))
        assert pkt.kind is PacketType.CALIBRATION_MAG
        assert (pkt.x, pkt.y, pkt.z) == (10000, 0, -10000)
        assert pkt.number == 56

    def test_decode_sensor_accepts_both(self):
        assert decode_sensor(self.FRAME_G).kind is PacketType.CALIBRATION_ACCEL

    def test_type_mismatch(self):
        with pytest.raises(FramingError):
            decode_calibration_mag(self.FRAME_G)

    def test_memory_reply(self):
        r = decode_memory_reply(bytes([0x38, 0x10, 0x80, 1, 2, 3, 4, 0]))
        assert r.address == 0x8010
        assert r.data == bytes([1, 2, 3, 4])


# ── Commands ───────────────────────────────────────────────────────────────

class TestCommands:
    def test_ack(self):
        assert build_ack(0) == bytes([0x55])
        assert build_ack(1) == bytes([0xD5])

    def test_fixed_opcodes(self):
        assert build_start_calibration() == bytes([Command.START_CALIBRATION]) == b"\x31"
        assert build_stop_calibration() == b"\x30"
        assert build_start_silent() == b"\x33"
        assert build_stop_silent() == b"\x32"

    def test_read_memory(self):
        assert build_read_memory(0x8010) == bytes([0x38, 0x10, 0x80])

    def test_write_memory(self):
        cmd = build_write_memory(0x803C, b"\x01\x02\x03\x04")
        assert cmd == bytes([0x39, 0x3C, 0x80, 1, 2, 3, 4])

    def test_write_memory_rejects_bad_length(self):
        with pytest.raises(InvalidArgument):
            build_write_memory(0x8010, b"\x01\x02\x03")
        with pytest.raises(InvalidArgument):
            build_write_memory(0x8010, b"\x01\x02\x03\x04\x05")

    def test_address_range(self):
        with pytest.raises(InvalidArgument):
            build_read_memory(0x10000)
        with pytest.raises(InvalidArgument):
            build_write_memory(-1, b"\x00" * 4)

    def test_hexdump(self):
        assert hexdump(b"\x01\xab") == "01 ab"
