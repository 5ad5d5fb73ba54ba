"""Concurrency tests — quota admission and version append under parallel callers."""

from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import select

from docvault.db.models import DocumentVersion
from docvault.db.session import session_scope
from docvault.engine.errors import ConflictError, QuotaExceededError

WORKERS = 8


def run_parallel(fn, count):
    """Run fn(i) for i in range(count); return (results, errors)."""
    results, errors = [], []
    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        futures = [pool.submit(fn, i) for i in range(count)]
        for f in futures:
            try:
                results.append(f.result())
            except (QuotaExceededError, ConflictError) as e:
                errors.append(e)
    return results, errors


class TestParallelAdmission:
    def test_only_one_upload_fits(self, service, workspace, blob_store, storage_used):
        # 6 MB each against a 10 MB limit: exactly one can be admitted
        payload = b"x" * 6_000_000

        results, errors = run_parallel(
            lambda i: service.upload(payload, f"f{i}.bin", None, workspace.id, 1), WORKERS,
        )

        assert len(results) == 1
        assert len(errors) == WORKERS - 1
        assert all(isinstance(e, QuotaExceededError) for e in errors)
        assert storage_used(workspace.id) == 6_000_000
        # Losers' blobs were compensated
        assert len(list(blob_store.list_keys())) == 1

    def test_counter_matches_admitted_total(self, service, workspace, storage_used):
        payload = b"y" * 1_500_000
        results, errors = run_parallel(
            lambda i: service.upload(payload, f"g{i}.bin", None, workspace.id, 2), 10,
        )
        assert len(results) == 6
        assert len(errors) == 4
        assert storage_used(workspace.id) == 6 * 1_500_000


class TestParallelVersions:
    def test_versions_stay_contiguous(self, service, workspace, blob_store, session_factory,
                                      storage_used):
        doc = service.upload(b"v1", "doc.txt", None, workspace.id, 1)

        results, errors = run_parallel(
            lambda i: service.upload_version(doc.id, b"v" * (i + 10), 1), 12,
        )

        assert all(isinstance(e, ConflictError) for e in errors)
        current = service.get(doc.id, 1)
        assert current.version_number == 1 + len(results)

        with session_scope(session_factory) as session:
            rows = session.execute(
                select(DocumentVersion.version, DocumentVersion.size, DocumentVersion.blob_key)
                .where(DocumentVersion.document_id == doc.id)
                .order_by(DocumentVersion.version)
            ).all()
        assert [r.version for r in rows] == list(range(1, current.version_number + 1))
        # Billing equals the sum of committed versions; conflicted uploads left nothing behind
        assert storage_used(workspace.id) == sum(r.size for r in rows)
        assert sorted(i.key for i in blob_store.list_keys()) == sorted(r.blob_key for r in rows)
