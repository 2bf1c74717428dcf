"""
groups — Location-bound community groups.

Sub-modules:
    directory  — join-or-create, membership changes, chat lists, discovery
    models     — Group, Member, JoinResult and friends
"""
