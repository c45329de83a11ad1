"""
Coding Test Engine - Core Package

This package contains the execution, grading and session components for
timed coding tests:
- models: Data structures for problems, tests, attempts and results
- sandbox: Isolated, resource-limited code execution
- grader: Test case execution and output validation
- scoring: Score aggregation and derived result views
- session: Attempt lifecycle state machine
- activity: Interaction counters for attempts
- bank: Plain and encrypted problem banks
- service: Dictionary-based facade over the engine
"""

__version__ = "1.0.0"
