"""Exception hierarchy shared by the build pipeline."""


class BuildError(Exception):
    """Base class for every error raised by the builder."""


class ConfigError(BuildError):
    """Broken configuration: the operator has to fix the input file."""


class ResolutionError(BuildError):
    """Could not resolve a patch bundle, CLI or remote artifact for one app."""


class FetchError(ResolutionError):
    """A remote artifact could not be fetched after all retries."""


class PatchSourceError(ResolutionError):
    pass


class UnknownPatchSource(PatchSourceError):
    pass


class MissingSourceField(PatchSourceError):
    pass


class NoPatchSourcesResolved(PatchSourceError):
    pass


class NoVersionResolved(BuildError):
    """No target version could be chosen; the app is skipped, not the run."""


class BuildSkipped(BuildError):
    """Recoverable per-app problem (empty package id, download exhausted, ...)."""
