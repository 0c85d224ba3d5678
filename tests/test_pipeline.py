"""Tests for the read pipeline: caching, visibility and validation order."""

import pytest

from dbhub import cache_keys
from dbhub.cache import ResultCache
from dbhub.config import settings
from dbhub.errors import BadRequest, Forbidden, InvalidDatabase, TableNotFound
from dbhub.object_store import FilesystemObjectStore
from dbhub.pipeline import ReadPipeline
from dbhub.reader import RowFilter
from dbhub.services import Services


class CountingStore(FilesystemObjectStore):
    """Filesystem store counting get() calls."""

    def __init__(self, root):
        super().__init__(root)
        self.gets = 0

    def get(self, bucket, object_id):
        self.gets += 1
        return super().get(bucket, object_id)


@pytest.fixture
def services(metadata_db, temp_data_dir):
    return Services(
        config=settings,
        metadata=metadata_db,
        object_store=CountingStore(temp_data_dir["objects_dir"]),
        cache=ResultCache(metadata_db),
    )


@pytest.fixture
def pipeline(services):
    return ReadPipeline(services)


@pytest.fixture
def store_database(services):
    """Store a file and register it as the next version of owner/name."""
    counter = iter(range(1_000_000))

    def _store(owner, name, path, public=True):
        bucket = f"bucket-{owner}"
        object_id = f"obj{next(counter)}.db"
        services.object_store.ensure_bucket(bucket)
        with open(path, "rb") as f:
            size = services.object_store.put(bucket, object_id, f, "application/x-sqlite3")
        return services.metadata.add_database_version(
            owner=owner,
            name=name,
            object_bucket=bucket,
            object_id=object_id,
            size_bytes=size,
            sha256="0" * 64,
            public=public,
        )

    return _store


class TestTableView:
    """Tests for ReadPipeline.table_view()."""

    def test_first_table_with_row_cap(self, pipeline, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        result = pipeline.table_view("alice", "sales.db", None)

        assert result["Tablename"] == "sales"
        assert result["RowCount"] == settings.anonymous_max_rows
        assert result["TotalRows"] == 25
        assert result["ColNames"] == ["id", "item", "amount", "region"]

    def test_empty_table_is_empty_list(self, pipeline, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)
        assert pipeline.table_view("alice", "sales.db", None, table="notes") == []

    def test_second_read_is_served_from_cache(self, pipeline, services, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        first = pipeline.table_view("alice", "sales.db", None)
        second = pipeline.table_view("alice", "sales.db", None)

        assert first == second
        assert services.object_store.gets == 1

    def test_owner_and_anonymous_do_not_share_entries(
        self, pipeline, services, store_database, sales_db, make_sqlite
    ):
        """Test that a private version never leaks through the cache."""
        private_db = make_sqlite({"secret": ("v TEXT", [("classified",)])})
        store_database("alice", "test.db", sales_db, public=True)
        store_database("alice", "test.db", private_db, public=False)

        owner_view = pipeline.table_view("alice", "test.db", "alice")
        anon_view = pipeline.table_view("alice", "test.db", None)
        other_view = pipeline.table_view("alice", "test.db", "bob")

        assert owner_view["Tablename"] == "secret"
        assert anon_view["Tablename"] == "sales"
        assert other_view["Tablename"] == "sales"

    def test_user_max_rows_preference(self, pipeline, services, store_database, sales_db):
        services.metadata.create_user("bob", "bucket-bob", "h" * 64, "dbhub_bbbbbbbb")
        services.metadata.set_user_max_rows("bob", 20)
        store_database("alice", "sales.db", sales_db)

        assert pipeline.table_view("alice", "sales.db", "bob")["RowCount"] == 20

    def test_unknown_table_writes_no_cache_entry(self, pipeline, services, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)
        locations_only = services.metadata.count_cache_entries()

        with pytest.raises(TableNotFound):
            pipeline.table_view("alice", "sales.db", None, table="missing")

        # Only the resolved location was cached
        assert services.metadata.count_cache_entries() - locations_only <= 1

    def test_invalid_database_file(self, pipeline, services, store_database, tmp_path):
        junk = tmp_path / "junk.db"
        junk.write_bytes(b"not sqlite" * 200)
        store_database("alice", "junk.db", junk)

        with pytest.raises(InvalidDatabase):
            pipeline.table_view("alice", "junk.db", None)

    def test_private_version_forbidden(self, pipeline, services, store_database, sales_db):
        store_database("alice", "test.db", sales_db, public=True)
        store_database("alice", "test.db", sales_db, public=False)

        with pytest.raises(Forbidden):
            pipeline.table_view("alice", "test.db", None, version=2)
        assert services.object_store.gets == 0


class TestLocationCache:
    """Tests for the cached location lookup."""

    def test_location_cached_until_expiry(self, pipeline, services, store_database, sales_db, make_sqlite):
        store_database("alice", "sales.db", sales_db)
        assert pipeline.locate("alice", "sales.db", None, None).version == 1

        store_database("alice", "sales.db", make_sqlite({"t": ("v", [(1,)])}))

        # Still the cached location
        assert pipeline.locate("alice", "sales.db", None, None).version == 1

        key = cache_keys.location_key("alice", "sales.db", None, None)
        services.metadata.execute_write(
            "UPDATE cache_entries SET created_at = created_at - 10000 WHERE key = ?", [key]
        )
        assert pipeline.locate("alice", "sales.db", None, None).version == 2


class TestValidationBeforeIO:
    """Tests that malformed requests fail before touching storage."""

    def test_bad_operator(self, pipeline, services, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        with pytest.raises(BadRequest):
            pipeline.vis_data(
                "alice", "sales.db", None, row_filter=RowFilter("id", "; DROP", "1")
            )
        assert services.object_store.gets == 0

    def test_csv_needs_table(self, pipeline, services):
        with pytest.raises(BadRequest):
            pipeline.csv_export("alice", "sales.db", None, table="")
        assert services.object_store.gets == 0


class TestOtherEndpoints:
    """Tests for csv, chart data and page payloads."""

    def test_csv_export_has_all_rows(self, pipeline, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        rows = pipeline.csv_export("alice", "sales.db", None, table="sales")

        assert len(rows) == 25
        assert rows[0] == ["1", "item 1", "1.5000", "r1"]
        assert rows[4][3] == "NULL"

    def test_vis_data_projection(self, pipeline, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        result = pipeline.vis_data("alice", "sales.db", None, x_column="id", y_column="region")

        assert result["ColNames"] == ["id", "region"]
        assert result["RowCount"] == 20
        assert result["TotalRows"] == 25

    def test_vis_data_single_column_reads_whole_table(self, pipeline, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        result = pipeline.vis_data("alice", "sales.db", None, x_column="id")

        assert result["ColNames"] == ["id", "item", "amount", "region"]
        assert result["RowCount"] == 25

    def test_database_page(self, pipeline, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        page = pipeline.database_page("alice", "sales.db", None)

        assert page["Owner"] == "alice"
        assert page["Version"] == 1
        assert page["Tables"] == ["sales", "notes"]
        assert page["MaxRows"] == settings.anonymous_max_rows
        assert page["Data"]["RowCount"] == settings.anonymous_max_rows

    def test_vis_page(self, pipeline, store_database, sales_db):
        store_database("alice", "sales.db", sales_db)

        page = pipeline.vis_page("alice", "sales.db", None, table="sales")

        assert page["ColNames"] == ["id", "item", "amount", "region"]
        assert page["Data"]["RowCount"] == 25
