"""
Tests for the crawl queue service: the listing/details job flow and the
crawl source state machine.
"""

from datetime import timedelta

import pytest

from conftest import FakeRepository, make_entries
from opportunity_crawler.core.errors import ConfigurationError, SourceInactiveError, SourceNotFoundError
from opportunity_crawler.models import ScrapingResult
from opportunity_crawler.pipeline.crawl_queue import (
    ERROR_MESSAGE_LIMIT,
    PRIORITY_BULK,
    PRIORITY_DETAILS,
    PRIORITY_MANUAL,
    PRIORITY_SCHEDULED,
    CrawlQueueService,
    build_cache_key,
)
from opportunity_crawler.pipeline.job_store import JobState


@pytest.fixture
def service(repository, registry, cache, clock):
    return CrawlQueueService(
        repository,
        registry,
        cache,
        backoff_seconds=0,
        max_detail_delay=0,
        max_schedule_jitter=0,
        clock=clock,
    )


async def run_listing(service, source_id, **kwargs):
    job = await service.trigger_listing_crawl(source_id, **kwargs)
    await service.listing_queue.run_pending()
    return job


class TestListingCrawl:
    """Test listing jobs that write drafts straight from the listing."""

    @pytest.mark.asyncio
    async def test_weekly_source_end_to_end(self, service, repository, clock):
        """Test a successful crawl writes drafts and reschedules the source."""
        source = repository.add_source(frequency="WEEKLY", is_details_crawled=False)

        job = await run_listing(service, source["id"])

        stored = repository.sources[source["id"]]
        assert job.state == JobState.COMPLETED
        assert job.result["total_found"] == 3
        assert job.result["drafts_created"] == 3
        assert stored["status"] == "INACTIVE"
        assert stored["opportunities_found"] == 3
        assert stored["last_crawled_at"] == clock.now
        assert stored["next_crawl_at"] == clock.now + timedelta(days=7)
        assert stored["error_message"] is None

        assert len(repository.drafts) == 3
        assert {d["status"] for d in repository.drafts} == {"PENDING"}
        assert {d["crawl_source_id"] for d in repository.drafts} == {source["id"]}
        assert sorted(d["source_url"] for d in repository.drafts) == [
            f"https://opportunitiesforafricans.com/scholarship-{i}" for i in (1, 2, 3)
        ]
        assert all(d["is_details_crawled"] is False for d in repository.drafts)

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate_drafts(self, service, repository):
        source = repository.add_source()

        await run_listing(service, source["id"])
        job = await run_listing(service, source["id"])

        assert len(repository.drafts) == 3
        assert job.result["drafts_created"] == 0
        assert repository.sources[source["id"]]["opportunities_found"] == 6

    @pytest.mark.asyncio
    @pytest.mark.parametrize("frequency,interval", [
        ("DAILY", timedelta(days=1)),
        ("MONTHLY", timedelta(days=30)),
    ])
    async def test_next_crawl_follows_frequency(self, service, repository, clock, frequency, interval):
        source = repository.add_source(frequency=frequency)
        await run_listing(service, source["id"])
        assert repository.sources[source["id"]]["next_crawl_at"] == clock.now + interval

    @pytest.mark.asyncio
    async def test_one_bad_entry_does_not_stop_the_batch(self, registry, cache, clock):
        class FlakyRepository(FakeRepository):
            async def create_draft_if_absent(self, draft):
                if draft["source_url"].endswith("scholarship-2"):
                    raise RuntimeError("constraint violation")
                return await super().create_draft_if_absent(draft)

        repository = FlakyRepository()
        service = CrawlQueueService(repository, registry, cache, backoff_seconds=0, clock=clock)
        source = repository.add_source()

        job = await run_listing(service, source["id"])

        assert job.state == JobState.COMPLETED
        assert job.result["drafts_created"] == 2
        assert job.result["draft_errors"] == [
            {"opportunity_id": "scholarship-2", "error": "constraint violation"}
        ]
        assert repository.sources[source["id"]]["status"] == "INACTIVE"


class TestListingCrawlErrors:
    """Test the ERROR transition."""

    @pytest.mark.asyncio
    async def test_failed_scrape_marks_error_after_retries(self, service, repository, fake_scraper):
        fake_scraper.result = ScrapingResult.failed("proxy says " + "x" * 600)
        source = repository.add_source()

        job = await run_listing(service, source["id"])

        stored = repository.sources[source["id"]]
        assert job.state == JobState.FAILED
        assert job.attempts_made == 3
        assert len(fake_scraper.listing_calls) == 3
        assert stored["status"] == "ERROR"
        assert stored["error_message"].startswith("Crawl failed: proxy says")
        assert len(stored["error_message"]) == ERROR_MESSAGE_LIMIT
        assert stored["opportunities_found"] == 0
        assert repository.drafts == []

    @pytest.mark.asyncio
    async def test_zero_entries_is_an_error(self, service, repository, fake_scraper):
        fake_scraper.result = ScrapingResult(success=True, entries=[])
        source = repository.add_source()

        await run_listing(service, source["id"])

        stored = repository.sources[source["id"]]
        assert stored["status"] == "ERROR"
        assert stored["error_message"] == "No opportunities found"

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_not_retried(self, service, repository, fake_scraper):
        fake_scraper.result = ScrapingResult.failed("scraper not yet implemented", retryable=False)
        source = repository.add_source()

        job = await run_listing(service, source["id"])

        assert job.state == JobState.FAILED
        assert job.attempts_made == 1
        assert repository.sources[source["id"]]["status"] == "ERROR"

    @pytest.mark.asyncio
    async def test_source_deleted_after_queueing(self, service, repository):
        source = repository.add_source()
        job = await service.trigger_listing_crawl(source["id"])
        del repository.sources[source["id"]]

        await service.listing_queue.run_pending()

        assert job.state == JobState.FAILED
        assert job.attempts_made == 1
        assert "Crawl source not found" in job.failed_reason

    @pytest.mark.asyncio
    async def test_error_source_recovers_on_next_success(self, service, repository, fake_scraper):
        source = repository.add_source(status="ERROR", error_message="previous failure")

        await run_listing(service, source["id"])

        stored = repository.sources[source["id"]]
        assert stored["status"] == "INACTIVE"
        assert stored["error_message"] is None


class TestDetailsCrawl:
    """Test sources crawled through per-opportunity detail jobs."""

    @pytest.mark.asyncio
    async def test_listing_queues_one_detail_job_per_entry(self, service, repository, cache):
        source = repository.add_source(is_details_crawled=True)

        job = await run_listing(service, source["id"])

        assert job.result["details_queued"] == 3
        assert repository.drafts == []
        details_jobs = await service.details_queue.get_jobs()
        assert len(details_jobs) == 3
        cache_key = build_cache_key(source["id"], source["url"])
        for details_job in details_jobs:
            assert details_job.options.priority == PRIORITY_DETAILS
            assert details_job.data["cache_key"] == cache_key
            assert details_job.data["crawl_source_id"] == source["id"]
            assert details_job.data["scraper_type"] == "OPPORTUNITY_FOR_AFRICANS"
        # The batch is cached before any detail job can run
        assert await cache.get(cache_key) is not None
        assert repository.sources[source["id"]]["status"] == "INACTIVE"
        assert repository.sources[source["id"]]["opportunities_found"] == 3

    @pytest.mark.asyncio
    async def test_detail_jobs_write_drafts(self, service, repository, fake_scraper):
        source = repository.add_source(is_details_crawled=True)
        await run_listing(service, source["id"])

        assert await service.details_queue.run_pending() == 3

        assert sorted(fake_scraper.details_calls) == ["scholarship-1", "scholarship-2", "scholarship-3"]
        assert len(repository.drafts) == 3
        draft = next(d for d in repository.drafts if d["source_url"].endswith("scholarship-1"))
        assert draft["title"] == "Detailed scholarship-1"
        assert draft["organization"] == "Mastercard Foundation"
        assert draft["description"] == "Full description"
        assert draft["locations"] == ["Ghana"]
        assert draft["is_details_crawled"] is True
        assert draft["raw_scraped_data"]["listing"]["opportunity_id"] == "scholarship-1"

    @pytest.mark.asyncio
    async def test_failing_detail_does_not_affect_siblings(self, service, repository, fake_scraper):
        fake_scraper.failing_details.add("scholarship-2")
        source = repository.add_source(is_details_crawled=True)
        await run_listing(service, source["id"])

        await service.details_queue.run_pending()

        counts = await service.details_queue.get_counts()
        assert counts["completed"] == 2
        assert counts["failed"] == 1
        assert fake_scraper.details_calls.count("scholarship-2") == 3
        assert len(repository.drafts) == 2
        assert repository.sources[source["id"]]["status"] == "INACTIVE"

    @pytest.mark.asyncio
    async def test_expired_cache_fails_without_retry(self, service, repository, fake_scraper, clock):
        source = repository.add_source(is_details_crawled=True)
        await run_listing(service, source["id"])

        clock.advance(hours=24)
        await service.details_queue.run_pending()

        failed = await service.details_queue.get_jobs(JobState.FAILED)
        assert len(failed) == 3
        assert all(job.attempts_made == 1 for job in failed)
        assert all("Cache not found" in job.failed_reason for job in failed)
        assert fake_scraper.details_calls == []
        assert repository.drafts == []

    @pytest.mark.asyncio
    async def test_rerun_of_detail_job_is_idempotent(self, service, repository):
        source = repository.add_source(is_details_crawled=True)
        await run_listing(service, source["id"])
        await service.details_queue.run_pending()

        await run_listing(service, source["id"])
        await service.details_queue.run_pending()

        assert len(repository.drafts) == 3
        completed = await service.details_queue.get_jobs(JobState.COMPLETED)
        assert [job.result["draft_created"] for job in completed].count(False) == 3


class TestTriggers:
    """Test manual, bulk and scheduled triggers."""

    @pytest.mark.asyncio
    async def test_manual_trigger(self, service, repository):
        source = repository.add_source()

        job = await service.trigger_listing_crawl(source["id"], user_id="admin-1")

        assert job.options.priority == PRIORITY_MANUAL
        assert job.state == JobState.WAITING
        assert job.data == {
            "crawl_source_id": source["id"],
            "url": source["url"],
            "scraper_type": "OPPORTUNITY_FOR_AFRICANS",
            "user_id": "admin-1",
        }

    @pytest.mark.asyncio
    async def test_trigger_with_delay(self, service, repository):
        source = repository.add_source()
        job = await service.trigger_listing_crawl(source["id"], priority=3, delay=10)
        assert job.state == JobState.DELAYED
        assert job.options.priority == 3

    @pytest.mark.asyncio
    async def test_trigger_unknown_source(self, service):
        with pytest.raises(SourceNotFoundError):
            await service.trigger_listing_crawl("src-missing")

    @pytest.mark.asyncio
    async def test_trigger_disabled_source(self, service, repository):
        source = repository.add_source(is_active=False)
        with pytest.raises(SourceInactiveError, match="not active"):
            await service.trigger_listing_crawl(source["id"])

    @pytest.mark.asyncio
    async def test_trigger_while_crawl_in_flight(self, service, repository):
        source = repository.add_source(status="ACTIVE")
        with pytest.raises(SourceInactiveError, match="already in progress"):
            await service.trigger_listing_crawl(source["id"])

    @pytest.mark.asyncio
    async def test_trigger_unknown_scraper_type(self, service, repository):
        source = repository.add_source(scraper_type="MONSTER")
        with pytest.raises(ConfigurationError):
            await service.trigger_listing_crawl(source["id"])
        assert (await service.listing_queue.get_counts())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_bulk_trigger(self, service, repository):
        first = repository.add_source()
        second = repository.add_source()
        disabled = repository.add_source(is_active=False)

        result = await service.trigger_bulk_crawl([first["id"], "src-missing", disabled["id"], second["id"]])

        assert [q["crawl_source_id"] for q in result["queued"]] == [first["id"], second["id"]]
        assert [s["crawl_source_id"] for s in result["skipped"]] == ["src-missing", disabled["id"]]
        assert result["errors"] == []

        jobs = {job.data["crawl_source_id"]: job for job in await service.listing_queue.get_jobs()}
        assert jobs[first["id"]].options.priority == PRIORITY_BULK
        assert jobs[first["id"]].state == JobState.WAITING
        assert jobs[second["id"]].state == JobState.DELAYED
        assert jobs[second["id"]].options.delay == 2

    @pytest.mark.asyncio
    async def test_bulk_trigger_collects_errors(self, service, repository):
        source = repository.add_source(scraper_type="MONSTER")
        result = await service.trigger_bulk_crawl([source["id"]])
        assert result["queued"] == []
        assert result["errors"][0]["crawl_source_id"] == source["id"]

    @pytest.mark.asyncio
    async def test_schedule_due_sources(self, service, repository, clock):
        never_crawled = repository.add_source(frequency="DAILY")
        overdue = repository.add_source(next_crawl_at=clock.now - timedelta(hours=1))
        repository.add_source(next_crawl_at=clock.now + timedelta(hours=1))
        repository.add_source(status="ACTIVE")
        repository.add_source(is_active=False)

        queued = await service.schedule_due_sources()

        assert queued == 2
        jobs = await service.listing_queue.get_jobs()
        assert {job.data["crawl_source_id"] for job in jobs} == {never_crawled["id"], overdue["id"]}
        assert {job.options.priority for job in jobs} == {PRIORITY_SCHEDULED}
        assert repository.sources[never_crawled["id"]]["next_crawl_at"] == clock.now + timedelta(days=1)
        assert repository.sources[overdue["id"]]["next_crawl_at"] == clock.now + timedelta(days=7)

        # Advanced next_crawl_at keeps the next sweep from queueing them again
        assert await service.schedule_due_sources() == 0


class TestStatsAndCleanup:
    """Test queue statistics and job cleanup."""

    @pytest.mark.asyncio
    async def test_queue_stats(self, service, repository):
        source = repository.add_source(is_details_crawled=True)
        await run_listing(service, source["id"])

        stats = await service.get_queue_stats()

        assert stats["listing"]["completed"] == 1
        assert stats["details"]["waiting"] == 3

    @pytest.mark.asyncio
    async def test_cleanup_keeps_recent_jobs(self, service, repository):
        source = repository.add_source()
        await run_listing(service, source["id"])

        result = await service.cleanup_jobs()

        assert result == {
            "listing_completed": 0,
            "listing_failed": 0,
            "details_completed": 0,
            "details_failed": 0,
            "cache_expired": 0,
        }
        assert (await service.get_queue_stats())["listing"]["completed"] == 1

    @pytest.mark.asyncio
    async def test_cleanup_purges_expired_listing_batches(self, service, repository, cache, clock):
        source = repository.add_source()
        await run_listing(service, source["id"])

        clock.advance(hours=25)
        result = await service.cleanup_jobs()

        assert result["cache_expired"] == 1
        assert await cache.get(build_cache_key(source["id"], source["url"])) is None
