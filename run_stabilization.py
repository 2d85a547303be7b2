#!/usr/bin/env python3
"""
CLI entry point for gyro-based video stabilization.

Usage:
    python run_stabilization.py input.mp4 output.mp4 --gyro input.gyroflow
    python run_stabilization.py input.mp4 output.mp4 --gyro log.csv --lens lens.json --smoothing Kalman
    python run_stabilization.py input.mp4 output.mp4 --gyro log.csv --adaptive-zoom 4 --backend torch --device cuda
"""

from gyrostab.render import main

if __name__ == "__main__":
    main()
