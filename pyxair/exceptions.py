class MixerError(Exception):
    """Base exception for pyxair errors."""
    pass


class MixerConnectionError(MixerError):
    """The UDP endpoint towards the mixer could not be opened."""
    pass


class MixerNotConnectedError(MixerError):
    """A command was issued while no transport is open."""
    pass
