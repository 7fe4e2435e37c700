"""Call-session components layered on top of the external calling platform.

The platform SDK owns media transport and advances the calling state. These
modules only observe that state, send the occasional custom event and decide
when a session should end:
join/supervise -> extension + disconnect detection -> teardown.
"""
