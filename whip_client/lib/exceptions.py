from typing import Optional


class SessionError(Exception):
  """Base class for errors raised while setting up or running a WHIP session."""


class ConfigError(SessionError):
  """A required option is missing or invalid. Raised before the session is started."""


class SdpParseError(SessionError):
  """The session description could not be scanned for the ICE credentials and mid."""


class TransportError(SessionError):
  """The HTTP request could not be completed (network failure, too many redirects, bad URL)."""


# pylint: disable=unsubscriptable-object
class ProtocolError(SessionError):
  """The WHIP endpoint answered with an unexpected status code or content type."""

  def __init__(self, message: str, status_code: Optional[int] = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class MediaEngineError(SessionError):
  """The media engine reported an unrecoverable ICE, DTLS or PeerConnection failure."""

  def __init__(self, message: str, layer: Optional[str] = None) -> None:
    super().__init__(message)
    self.layer = layer
