from enum import IntEnum


class HierarchyLevel(IntEnum):
    """Represents the depth in the data hierarchy, larger values mean more detail"""

    PATIENT = 0
    STUDY = 1
    SERIES = 2
    IMAGE = 3
