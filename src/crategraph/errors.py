"""Exceptions raised by crategraph.

All errors derive from CrateGraphError and carry a stable ``code`` string so
front ends (CLI, HTTP API) can map them without matching on messages.
"""

from __future__ import annotations


class CrateGraphError(Exception):
    """Base class for all crategraph errors."""

    code = "crategraph_error"


class MetadataParseError(CrateGraphError):
    """The metadata document is not valid JSON or has the wrong shape."""

    code = "metadata_parse"


class PackageGraphConstructError(CrateGraphError):
    """The metadata document is structurally invalid."""

    code = "graph_construct"


class MalformedIdError(PackageGraphConstructError):
    """A package identifier or version could not be parsed."""

    code = "malformed_id"

    def __init__(self, package_id: object, reason: str) -> None:
        self.package_id = package_id
        self.reason = reason
        super().__init__(f"malformed package id {package_id!r}: {reason}")


class DuplicateWorkspaceMemberError(PackageGraphConstructError):
    """Two workspace members share a name or a directory."""

    code = "duplicate_workspace_member"

    def __init__(self, key: str, first: str, second: str) -> None:
        self.key = key
        self.first = first
        self.second = second
        super().__init__(
            f"duplicate workspace member {key!r}: {first} and {second}"
        )


class UnknownDependencyError(PackageGraphConstructError):
    """An edge or workspace member references a package absent from the graph."""

    code = "unknown_dependency"

    def __init__(self, package_id: str, referenced_by: str) -> None:
        self.package_id = package_id
        self.referenced_by = referenced_by
        super().__init__(f"unknown package {package_id} referenced by {referenced_by}")


class UnknownPackageIdError(CrateGraphError):
    """A package id passed to a query is not part of the graph."""

    code = "unknown_package_id"

    def __init__(self, package_id: object) -> None:
        self.package_id = package_id
        super().__init__(f"unknown package id: {package_id}")


class UnknownFeatureIdError(CrateGraphError):
    """A feature id passed to a query is not part of the feature graph."""

    code = "unknown_feature_id"

    def __init__(self, feature_id: object) -> None:
        self.feature_id = feature_id
        super().__init__(f"unknown feature id: {feature_id}")


class GraphMismatchError(CrateGraphError):
    """Two sets or queries from different graphs were combined."""

    code = "graph_mismatch"


class CargoSetError(CrateGraphError):
    """The build simulator was asked for something it cannot compute."""

    code = "cargo_set"


class ResolutionDidNotConvergeError(CrateGraphError):
    """Feature-dependent platform conditions kept changing the result."""

    code = "resolution_did_not_converge"

    def __init__(self, iterations: int) -> None:
        self.iterations = iterations
        super().__init__(
            f"build resolution did not converge after {iterations} iterations "
            "(cyclic feature-dependent platform conditions?)"
        )


class PackageGraphInternalError(CrateGraphError):
    """verify() found a violated graph invariant."""

    code = "internal"
