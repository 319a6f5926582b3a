"""

# Create a token for a regular user
python -m db.tokens create --owner="amina" --expires_in_days=365

# Create an admin token
python -m db.tokens create --owner="ops" --role=admin --note="dashboard"

# List all tokens
python -m db.tokens read_all

"""

import uuid
from datetime import datetime, timedelta, timezone

from db.engine import get_mongo_collection

ROLES = ("user", "researcher", "admin")


class TokenManager:
    """
    Manages the API tokens that resolve bearer credentials to principals.
    """

    def __init__(self, collection=None):
        self.collection = collection if collection is not None else get_mongo_collection("api_tokens")

    def create(self, owner: str, role: str = "user", note: str = "", expires_in_days: int = 180):
        """
        Create a token with an expiry date.

        Args:
            owner (str): Principal id the token resolves to.
            role (str): One of user, researcher, admin.
            note (str): Free-form description.
            expires_in_days (int): Validity in days.
        """
        if role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}")
        token = str(uuid.uuid4())

        now = datetime.now(timezone.utc)
        token_doc = {
            "token": token,
            "owner": owner,
            "role": role,
            "note": note,
            "created_at": now,
            "expires_at": now + timedelta(days=expires_in_days),
            "active": True
        }

        self.collection.insert_one(token_doc)
        print(f"Token created for {owner} ({role}, expires in {expires_in_days} days): {token}")
        return token

    def read_all(self):
        """
        Print every stored token.
        """
        for t in self.collection.find():
            print({
                "token": t.get("token"),
                "owner": t.get("owner"),
                "role": t.get("role", "user"),
                "note": t.get("note"),
                "active": t.get("active"),
                "created_at": t.get("created_at"),
                "expires_at": t.get("expires_at"),
            })

    def deactivate(self, token: str):
        """
        Revoke a token without deleting it.
        """
        result = self.collection.update_one({"token": token}, {"$set": {"active": False}})
        print(f"Tokens deactivated: {result.modified_count}")
        return result.modified_count

    def delete_expired(self):
        """
        Remove expired tokens.
        """
        result = self.collection.delete_many({"expires_at": {"$lt": datetime.now(timezone.utc)}})
        print(f"Expired tokens removed: {result.deleted_count}")
        return result.deleted_count


if __name__ == "__main__":
    import fire
    fire.Fire(TokenManager)
