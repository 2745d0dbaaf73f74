"""
testkit: runs a driver process against a freshly started server.

The package starts a long-running server process, waits until it answers
HTTP requests, runs a finite driver process (usually a test suite) to
completion and then shuts the server down again.
"""

__version__ = "0.1.0"
