"""
Availability Domain

Doctor time slots: weekly-template generation, listing, and administrative
block/reopen/delete. The slot store in repository.py is the only code that
changes a slot's status.
"""
