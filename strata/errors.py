"""Build failure taxonomy.

Every failure aborts the stage it happens in. There is no partial-success
state: a stage that raised has no snapshot, and neither does anything that
depends on it.
"""


class BuildError(Exception):
    pass


class BaseNotFoundError(BuildError):
    """A parent stage or external base image could not be resolved."""


class PackageInstallError(BuildError):
    """An OS package or a locked dependency could not be installed."""


class PermissionMisalignmentError(BuildError):
    """A step ran into a path owned by the wrong account."""


class ManifestDriftError(BuildError):
    """Promoted artifacts were resolved against a different manifest."""


class ManifestError(BuildError):
    """The dependency manifest is malformed or inconsistent."""
