"""
Test Suite for the Minima Inference Core

Unit tests for each control component plus end-to-end tests of the
orchestrator running on the fake backends. No test needs model weights or a
GPU.
"""
