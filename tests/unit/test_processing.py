"""
Unit tests for mapping and item processing
"""

import pytest
from batch.mappers.field_set_mapper import FieldSetMapper
from batch.processors.item_processors import (
    CompositeItemProcessor,
    CustomerItemProcessor,
    PassThroughItemProcessor,
)
from core.exceptions import MappingError, ProcessingError
from schemas.records import CustomerRecord, RawRecord


def raw(offset, *fields):
    return RawRecord(offset=offset, fields=tuple(fields))


class TestFieldSetMapper:
    """Test raw record to CustomerRecord mapping"""

    def setup_method(self):
        self.mapper = FieldSetMapper(CustomerRecord)

    def test_map_success(self):
        record = self.mapper.map(raw(1, "42", "  Alice  ", "30", "alice@example.com"))

        assert record.customer_id == 42
        assert record.name == "Alice"
        assert record.age == 30
        assert record.email == "alice@example.com"

    def test_blank_optional_fields_become_none(self):
        record = self.mapper.map(raw(1, "42", "Alice", "", " "))

        assert record.age is None
        assert record.email is None

    def test_non_numeric_identifier(self):
        with pytest.raises(MappingError) as exc_info:
            self.mapper.map(raw(7, "abc", "Alice", "30", ""))

        error = exc_info.value
        assert error.offset == 7
        assert error.raw_content == "abc,Alice,30,"
        assert "customer_id" in error.context["field_errors"]
        assert error.reason.startswith("customer_id:")

    def test_raw_content_requotes_fields_without_source_line(self):
        with pytest.raises(MappingError) as exc_info:
            self.mapper.map(raw(3, "3", "Smith, John", "abc", ""))

        assert exc_info.value.raw_content == '3,"Smith, John",abc,'

    def test_several_field_errors_are_reported(self):
        with pytest.raises(MappingError) as exc_info:
            self.mapper.map(raw(3, "1", "Alice", "old", ""))

        assert set(exc_info.value.context["field_errors"]) == {"age"}

    def test_blank_name(self):
        with pytest.raises(MappingError) as exc_info:
            self.mapper.map(raw(2, "1", "   ", "30", ""))

        assert "name" in exc_info.value.context["field_errors"]

    def test_field_count_mismatch(self):
        with pytest.raises(MappingError):
            self.mapper.map(raw(1, "1", "Alice"))

    def test_explicit_field_order(self):
        mapper = FieldSetMapper(CustomerRecord, ["name", "customer_id", "email", "age"])

        record = mapper.map(raw(1, "Alice", "5", "a@x.com", "22"))

        assert record.customer_id == 5
        assert record.age == 22


class TestItemProcessors:
    """Test item processors"""

    def test_pass_through(self):
        item = CustomerRecord(customer_id=1, name="A")
        assert PassThroughItemProcessor().process(item) is item

    def test_customer_processor_normalizes(self):
        item = CustomerRecord(customer_id=1, name="Mary   Ann  Smith", age=30, email=" Mary@Example.COM ")

        processed = CustomerItemProcessor().process(item)

        assert processed.name == "Mary Ann Smith"
        assert processed.email == "mary@example.com"
        # Input records are never mutated
        assert item.email == " Mary@Example.COM "

    def test_customer_processor_rejects_invalid_email(self):
        item = CustomerRecord(customer_id=9, name="A", age=30, email="not-an-email")

        with pytest.raises(ProcessingError) as exc_info:
            CustomerItemProcessor().process(item)

        assert exc_info.value.context["field_name"] == "email"
        assert exc_info.value.context["customer_id"] == 9
        assert exc_info.value.offset is None

    def test_customer_processor_filters_by_age(self):
        processor = CustomerItemProcessor(min_age=18)

        assert processor.process(CustomerRecord(customer_id=1, name="A", age=17)) is None
        assert processor.process(CustomerRecord(customer_id=2, name="B")) is None
        assert processor.process(CustomerRecord(customer_id=3, name="C", age=18)) is not None

    def test_composite_stops_at_filter(self):
        class Recorder:
            def __init__(self):
                self.seen = []

            def process(self, item):
                self.seen.append(item)
                return item

        recorder = Recorder()
        composite = CompositeItemProcessor([CustomerItemProcessor(min_age=18), recorder])

        assert composite.process(CustomerRecord(customer_id=1, name="A", age=10)) is None
        assert recorder.seen == []

        adult = composite.process(CustomerRecord(customer_id=2, name="B", age=40))
        assert adult.customer_id == 2
        assert len(recorder.seen) == 1
