"""
Contact/User Registry - customer identity and registrant details keyed by email
"""

import logging
from typing import Any, Dict, Optional

from database import execute_query, execute_returning
from order_models import ContactInfo

logger = logging.getLogger(__name__)


class ContactRegistry:
    """PostgreSQL-backed user profiles; rows are upserted by email and never deleted"""

    async def upsert_user(self, contact: ContactInfo) -> Dict[str, Any]:
        """Create or update the user for contact.email_address and return the row"""
        contact.validate()
        fields = contact.to_user_fields()

        rows = await execute_returning("""
            INSERT INTO users (email, first_name, last_name, address1, address2, city,
                               state_province, postal_code, country, phone,
                               organization_name, job_title)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (email) DO UPDATE SET
                first_name = EXCLUDED.first_name,
                last_name = EXCLUDED.last_name,
                address1 = EXCLUDED.address1,
                address2 = EXCLUDED.address2,
                city = EXCLUDED.city,
                state_province = EXCLUDED.state_province,
                postal_code = EXCLUDED.postal_code,
                country = EXCLUDED.country,
                phone = EXCLUDED.phone,
                organization_name = EXCLUDED.organization_name,
                job_title = EXCLUDED.job_title,
                updated_at = NOW()
            RETURNING *
        """, (
            fields['email'], fields['first_name'], fields['last_name'], fields['address1'],
            fields['address2'], fields['city'], fields['state_province'], fields['postal_code'],
            fields['country'], fields['phone'], fields['organization_name'], fields['job_title'],
        ))

        user = rows[0]
        logger.info(f"👤 CONTACTS: Upserted user {user['id']}")
        return user

    async def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        rows = await execute_query("SELECT * FROM users WHERE id = %s", (user_id,))
        return rows[0] if rows else None
