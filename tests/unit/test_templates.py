"""Unit tests for lazy template creation."""

from concurrent.futures import ThreadPoolExecutor
import logging
import threading

import pytest

from partitioned_search.errors import EngineError, SchemaInferenceError, TemplateCreationError
from partitioned_search.schema import LongField, RecordSchema, TextField, infer_schema
from partitioned_search.templates import TemplateManager, build_template_body, schema_from_template
from tests.fixtures.fake_engine import FakeSearchEngine, engine_error
from tests.fixtures.records import Treatment, Untimed


pytestmark = pytest.mark.unit


def test_build_template_body(settings):
    schema = RecordSchema(fields=[TextField("label"), LongField("count")], name="Untimed")

    body = build_template_body("widgets", schema, settings.partition_settings())

    assert body["index_patterns"] == ["widgets-*"]
    assert body["template"]["settings"] == {"number_of_shards": 3, "number_of_replicas": 0, "refresh_interval": "1s"}
    assert body["template"]["mappings"] == schema.to_mapping()
    assert body["_meta"] == {"dataset": "widgets", "record": "Untimed", "schema": schema.to_dict()}


class TestTemplateManager:
    def test_creates_template_once(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)

        first = manager.ensure("treatments", Treatment("a", 1.0, True))
        second = manager.ensure("treatments", Treatment("b", 2.0, False))

        assert first is second
        assert len(fake_engine.operations("put_index_template")) == 1
        name, body, create = fake_engine.operations("put_index_template")[0]
        assert name == "treatments-template"
        assert create is True
        assert body["index_patterns"] == ["treatments-*"]
        assert manager.is_ready("treatments")

    def test_datasets_are_independent(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)

        manager.ensure("treatments", Treatment("a", 1.0, True))
        manager.ensure("widgets", Untimed("a", 1))

        assert set(fake_engine.templates) == {"treatments-template", "widgets-template"}

    def test_existing_template_counts_as_success(self, fake_engine, settings):
        TemplateManager(fake_engine, settings).ensure("treatments", Treatment("a", 1.0, True))

        # A second process with an empty cache hits the engine's "already exists"
        other = TemplateManager(fake_engine, settings)
        schema = other.ensure("treatments", Treatment("a", 1.0, True))

        assert schema.name == "Treatment"
        assert other.is_ready("treatments")

    def test_failure_is_not_cached(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)
        fake_engine.fail_next("put_index_template", engine_error(500, "cluster_block_exception", "blocked"))

        with pytest.raises(TemplateCreationError, match="blocked") as exc_info:
            manager.ensure("treatments", Treatment("a", 1.0, True))

        assert exc_info.value.dataset == "treatments"
        assert exc_info.value.template == "treatments-template"
        assert not manager.is_ready("treatments")

        manager.ensure("treatments", Treatment("a", 1.0, True))
        assert manager.is_ready("treatments")
        assert len(fake_engine.operations("put_index_template")) == 2

    def test_explicit_schema_skips_inference(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)
        schema = RecordSchema(fields=[TextField("label")], name="Label")

        assert manager.ensure("labels", schema=schema) is schema
        _, body, _ = fake_engine.operations("put_index_template")[0]
        assert body["template"]["mappings"] == {
            "properties": {"label": {"type": "text", "fields": {"keyword": {"type": "keyword", "ignore_above": 256}}}}
        }

    def test_primitive_sample_is_rejected_before_any_call(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)

        with pytest.raises(SchemaInferenceError):
            manager.ensure("numbers", 42)

        assert fake_engine.operations("put_index_template") == []

    def test_instances_do_not_share_cache(self, settings):
        first = TemplateManager(FakeSearchEngine(), settings)
        second = TemplateManager(FakeSearchEngine(), settings)

        first.ensure("treatments", Treatment("a", 1.0, True))

        assert first.is_ready("treatments")
        assert not second.is_ready("treatments")

    def test_concurrent_first_writes_agree_on_one_schema(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)
        barrier = threading.Barrier(8)

        def ensure():
            barrier.wait()
            return manager.ensure("treatments", Treatment("a", 1.0, True))

        with ThreadPoolExecutor(max_workers=8) as pool:
            schemas = list(pool.map(lambda _: ensure(), range(8)))

        assert all(schema is schemas[0] for schema in schemas)
        assert list(fake_engine.templates) == ["treatments-template"]
        assert len(fake_engine.operations("put_index_template")) >= 1

    def test_conflicting_stored_schema_wins(self, fake_engine, settings, caplog):
        TemplateManager(fake_engine, settings).ensure("treatments", Treatment("a", 1.0, True))
        other = TemplateManager(fake_engine, settings)

        with caplog.at_level(logging.WARNING, logger="partitioned_search.templates"):
            schema = other.ensure("treatments", Untimed("a", 1))

        assert schema.to_dict() == infer_schema(Treatment).to_dict()
        assert schema.record_type is None
        assert other.schema_for("treatments") is schema
        assert any("holds a different schema" in r.getMessage() for r in caplog.records)

    def test_matching_stored_schema_keeps_record_type(self, fake_engine, settings):
        TemplateManager(fake_engine, settings).ensure("treatments", Treatment("a", 1.0, True))

        schema = TemplateManager(fake_engine, settings).ensure("treatments", Treatment("b", 2.0, True))

        assert schema.record_type is Treatment
        assert fake_engine.operations("get_index_template") == ["treatments-template"]

    def test_unreadable_existing_template_is_not_cached(self, fake_engine, settings):
        TemplateManager(fake_engine, settings).ensure("treatments", Treatment("a", 1.0, True))
        other = TemplateManager(fake_engine, settings)
        fake_engine.fail_next("get_index_template", engine_error(500, "cluster_block_exception", "blocked"))

        with pytest.raises(TemplateCreationError, match="blocked"):
            other.ensure("treatments", Treatment("a", 1.0, True))

        assert not other.is_ready("treatments")

    def test_racing_record_classes_settle_on_the_stored_schema(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)
        barrier = threading.Barrier(8)
        samples = [Treatment("a", 1.0, True), Untimed("a", 1)] * 4

        def ensure(sample):
            barrier.wait()
            return manager.ensure("treatments", sample)

        with ThreadPoolExecutor(max_workers=8) as pool:
            schemas = list(pool.map(ensure, samples))

        stored = schema_from_template(fake_engine.templates["treatments-template"])
        assert all(schema.to_dict() == stored.to_dict() for schema in schemas)
        assert manager.schema_for("treatments").to_dict() == stored.to_dict()


class TestResolve:
    def test_reads_stored_schema_once(self, fake_engine, settings):
        TemplateManager(fake_engine, settings).ensure("treatments", Treatment("a", 1.0, True))
        reader = TemplateManager(fake_engine, settings)

        first = reader.resolve("treatments")
        second = reader.resolve("treatments")

        assert first is second
        assert first.to_dict() == infer_schema(Treatment).to_dict()
        assert fake_engine.operations("get_index_template") == ["treatments-template"]
        # Read-only knowledge never counts as an ensured template
        assert not reader.is_ready("treatments")

    def test_own_cache_is_used_first(self, fake_engine, settings):
        manager = TemplateManager(fake_engine, settings)
        schema = manager.ensure("treatments", Treatment("a", 1.0, True))

        assert manager.resolve("treatments") is schema
        assert fake_engine.operations("get_index_template") == []

    def test_unknown_dataset(self, fake_engine, settings):
        assert TemplateManager(fake_engine, settings).resolve("unknown") is None

    def test_foreign_template_has_no_schema(self, fake_engine, settings):
        fake_engine.templates["logs-template"] = {"index_patterns": ["logs-*"], "template": {"mappings": {}}}

        assert TemplateManager(fake_engine, settings).resolve("logs") is None

    def test_read_failure_propagates(self, fake_engine, settings):
        fake_engine.fail_next("get_index_template", engine_error(500, "cluster_block_exception", "blocked"))

        with pytest.raises(EngineError):
            TemplateManager(fake_engine, settings).resolve("treatments")
