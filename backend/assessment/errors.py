from __future__ import annotations


class AssessmentError(Exception):
	"""Base class for errors raised by the assessment core."""


class RemoteError(AssessmentError):
	"""A call to the content-generation/grading provider failed."""


class TransientRemoteError(RemoteError):
	"""Overload or rate-limit failure; worth retrying."""


class PermanentRemoteError(RemoteError):
	"""Non-retryable failure, e.g. a malformed response or missing payload."""


class DecodeError(AssessmentError):
	"""Synthesized audio bytes could not be decoded or assembled."""


class PlaybackUnavailableError(AssessmentError):
	"""No audio output on this host (sounddevice missing or no output device)."""


class InputError(AssessmentError):
	"""The user's input could not be used (blank answer, microphone unavailable, bad details)."""


class TransitionError(AssessmentError):
	"""An action was requested that the session's current stage does not allow."""
