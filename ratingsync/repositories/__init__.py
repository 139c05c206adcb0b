"""Repository functions over the ORM models.

Every function takes the caller's ``AsyncSession``; none of them commit.
"""
