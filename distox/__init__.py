"""
distox — Host-side library for the DistoX cave-survey instrument

Modules
-------
protocol       8-byte frame decode, host command encode, duplicate suppression
transport      Transport abstraction + pyserial implementation
connection     Link state machine, frame reassembly, ACKs, auto-reconnect
smart_shot     Splay / survey-shot triple detection
measurement    Shots -> survey legs with station names
calibration    Calibration data model + 48-byte coefficient format
positions      The 56 canonical calibration orientations
solver         Iterative least-squares calibration solver
session        Calibration workflow and device memory exchange
config         Settings, YAML/env configuration, logging setup
monitor        Console monitor application
"""
