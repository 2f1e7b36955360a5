"""
Calendar Sync Domain

External calendar credentials, slot import/export/sync and video meeting
links for virtual appointments.
"""
