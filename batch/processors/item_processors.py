"""
Item processors - pure per-record transformations and filters
"""

from typing import Any, Optional, Sequence
from schemas.records import CustomerRecord
from core.exceptions import ProcessingError
import logging

logger = logging.getLogger(__name__)


class PassThroughItemProcessor:
    """Return every item unchanged"""

    def process(self, item: Any) -> Any:
        return item


class CompositeItemProcessor:
    """
    Chain processors; the output of one is the input of the next.

    A processor returning None filters the item and ends the chain.
    """

    def __init__(self, processors: Sequence[Any]):
        self.processors = list(processors)

    def process(self, item: Any) -> Optional[Any]:
        for processor in self.processors:
            item = processor.process(item)
            if item is None:
                return None
        return item


class CustomerItemProcessor:
    """
    Normalize and validate customer records.

    - Trims the name and lowercases the email
    - Rejects an email without "@" (ProcessingError, routed to the skip policy)
    - Filters customers younger than ``min_age`` when one is configured
    """

    def __init__(self, min_age: Optional[int] = None):
        self.min_age = min_age

    def process(self, item: CustomerRecord) -> Optional[CustomerRecord]:
        email = item.email.strip().lower() if item.email else None

        if email is not None and "@" not in email:
            raise ProcessingError(
                f"Invalid email address {item.email!r}",
                context={"field_name": "email", "customer_id": item.customer_id}
            )

        if self.min_age is not None and (item.age is None or item.age < self.min_age):
            logger.debug(f"Filtered customer {item.customer_id} (age {item.age} < {self.min_age})")
            return None

        return item.model_copy(update={"name": " ".join(item.name.split()), "email": email})
