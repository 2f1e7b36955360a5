"""Doctor lookups and identifier resolution shared by the scheduling domains"""
