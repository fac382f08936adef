"""
Read access to notification recipients in the portal's users table, plus the
guest-customer upsert used by provider import.
"""

from jobflow.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one
from jobflow.infrastructure.observability.logging import get_logger
from jobflow.models.domain.billing_domain import ProviderCustomer
from jobflow.models.domain.notification_domain import Recipient

logger = get_logger(__name__)


class RecipientRepository:
    USER_SELECT_COLUMNS = """
        id, name, role, email, phone,
        email_notifications_enabled, sms_notifications_enabled,
        push_notifications_enabled, push_token, billing_customer_ref
    """

    @classmethod
    def _row_to_recipient(cls, row: dict | None) -> Recipient | None:
        if not row:
            return None

        return Recipient(
            id=str(row["id"]),
            name=row.get("name") or "",
            role=row.get("role") or "customer",
            email=row.get("email"),
            phone=row.get("phone"),
            email_enabled=bool(row.get("email_notifications_enabled", True)),
            sms_enabled=bool(row.get("sms_notifications_enabled", True)),
            push_enabled=bool(row.get("push_notifications_enabled", True)),
            push_token=row.get("push_token"),
            billing_customer_ref=row.get("billing_customer_ref"),
        )

    @classmethod
    async def get(cls, user_id: str) -> Recipient | None:
        query = f"SELECT {cls.USER_SELECT_COLUMNS} FROM users WHERE id = %s"
        return cls._row_to_recipient(await fetch_one(query, (user_id,)))

    @classmethod
    async def list_admins(cls) -> list[Recipient]:
        query = f"SELECT {cls.USER_SELECT_COLUMNS} FROM users WHERE role = 'admin' ORDER BY id"
        return [cls._row_to_recipient(row) for row in await fetch_all(query)]

    @classmethod
    async def find_by_billing_ref(cls, customer_ref: str) -> Recipient | None:
        query = f"SELECT {cls.USER_SELECT_COLUMNS} FROM users WHERE billing_customer_ref = %s"
        return cls._row_to_recipient(await fetch_one(query, (customer_ref,)))

    @classmethod
    async def link_billing_ref(cls, user_id: str, customer_ref: str) -> None:
        await execute_query(
            "UPDATE users SET billing_customer_ref = %s WHERE id = %s AND billing_customer_ref IS NULL",
            (customer_ref, user_id),
        )
        logger.info("Billing customer linked", user_id=user_id, customer_ref=customer_ref)

    @classmethod
    async def ensure_guest(cls, customer: ProviderCustomer) -> Recipient:
        """
        Return the user linked to a provider customer, creating a guest user
        when none exists. Matches by billing reference first, then email.
        """
        existing = await cls.find_by_billing_ref(customer.customer_ref)
        if existing:
            return existing

        if customer.email:
            query = f"""
                UPDATE users
                SET billing_customer_ref = %s
                WHERE lower(email) = lower(%s) AND billing_customer_ref IS NULL
                RETURNING {cls.USER_SELECT_COLUMNS}
            """
            row = await fetch_one(query, (customer.customer_ref, customer.email))
            if row:
                return cls._row_to_recipient(row)

        query = f"""
            INSERT INTO users (name, email, phone, role, billing_customer_ref)
            VALUES (%s, %s, %s, 'guest', %s)
            ON CONFLICT (billing_customer_ref) DO UPDATE
                SET billing_customer_ref = EXCLUDED.billing_customer_ref
            RETURNING {cls.USER_SELECT_COLUMNS}
        """
        row = await fetch_one(
            query,
            (
                customer.name or customer.email or "Guest customer",
                customer.email,
                customer.phone,
                customer.customer_ref,
            ),
        )
        if not row:
            raise DatabaseError("Failed to create guest customer", operation="ensure_guest")

        logger.info("Guest customer created", customer_ref=customer.customer_ref)
        return cls._row_to_recipient(row)
