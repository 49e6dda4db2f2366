from enum import StrEnum


class Relaxation(StrEnum):
    SDP = "SDP"
    SOCP = "SOCP"


class BranchingRegion(StrEnum):
    BOX = "box"
    ANGULAR = "angular"
    POLYHEDRAL = "polyhedral"
    HYBRID = "hybrid"


class PolyhedralMode(StrEnum):
    FULL = "full"  # corner-vector hull, 2^(n-1) corners per column
    LITE = "lite"  # one separating half-space plus a midpoint cut


class MSEKind(StrEnum):
    IN = "in"
    OUT = "out"
    ALL = "all"


# Search defaults
DEFAULT_GAP = 1e-6
DEFAULT_MAX_NODES = 1_000_000
DEFAULT_MAX_TIME = 3600.0
DEFAULT_UPDATE_STEP = 1000

# Warm start defaults
DEFAULT_ALTMIN_TOL = 1e-10
DEFAULT_ALTMIN_MAXITER = 10000

# Angles closer than this to 0 or pi are treated as sitting on the boundary
DEFAULT_ANGLE_ATOL = 1e-14
