"""
Test Suite for Ops Controller

This package contains tests for the control-plane components:
- detection state, anomaly detector and metrics/frame adapters
- investigation and development orchestrators
- code evolution engine, repositories and configuration
"""
