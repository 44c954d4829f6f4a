"""
Exceptions raised by the inbound email pipeline.

Extraction helpers never raise for malformed input; they degrade to empty or
default values.  The exceptions here are the ones the queue processor acts on:

  PermanentPayloadError  -> item marked failed immediately, no attempt consumed
  everything else        -> retried until the attempt budget runs out
"""


class InboundEmailError(Exception):
    """Base class for inbound email pipeline errors."""
    pass


class PermanentPayloadError(InboundEmailError):
    """The payload is structurally incomplete; retrying cannot help."""
    pass


class EmptyBodyError(InboundEmailError):
    """No body could be extracted and the empty-body policy is 'retry'."""
    pass


class ResponderTimeoutError(InboundEmailError):
    """The responder did not answer within the configured timeout."""
    pass


class QueueStoreError(InboundEmailError):
    """The queue or conversation store could not be reached."""
    pass


class InvalidTransitionError(InboundEmailError):
    """A queue item was asked to move to a status its lifecycle forbids."""
    pass
