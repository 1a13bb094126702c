"""
Test data builders shared across test modules
"""

from schemas.formats import FieldSpec


def make_user(barcode: str, **overrides) -> dict:
    user = {
        "id": f"id-{barcode}",
        "username": f"user_{barcode.lower()}",
        "barcode": barcode,
        "active": True,
        "type": "patron",
        "patronGroup": "staff",
        "departments": ["circulation"],
        "personal": {
            "lastName": f"Last{barcode}",
            "firstName": f"First{barcode}",
            "email": f"{barcode.lower()}@example.org",
        },
        "expirationDate": "2030-06-30T00:00:00.000+00:00",
    }
    user.update(overrides)
    return user


SIMPLE_USER_FIELDS = [
    FieldSpec("Barcode", "barcode"),
    FieldSpec("User name", "username"),
    FieldSpec("Last name", "personal.lastName"),
]
