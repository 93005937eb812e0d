import asyncio

from conftest import FakeGitHub
from pubparts.services.changeset import Changeset
from pubparts.services.publisher import PublishState, ReviewRequestPublisher

CHANGESET = Changeset(
    branch="add-part-1700000000500",
    base_branch="master",
    base_sha="base-sha",
    commit_sha="commit-1",
    paths=["src/data/parts/part-0001.json"],
)
MANUAL_URL = "https://github.com/Focerqc/CLONEpubparts.xyz/compare/master...add-part-1700000000500?expand=1"


def _publish(fake: FakeGitHub):
    publisher = ReviewRequestPublisher(fake.client(), base_branch="master")
    return asyncio.run(publisher.publish(CHANGESET, title="Add part: Motor mount", body="body\n"))


def test_open_review_request() -> None:
    fake = FakeGitHub()
    result = _publish(fake)

    assert result.state is PublishState.OPEN
    assert result.pr_url == "https://github.com/Focerqc/CLONEpubparts.xyz/pull/101"
    assert result.pr_number == 101
    assert result.completed
    assert fake.created_pulls[0]["head"] == CHANGESET.branch
    assert fake.created_pulls[0]["base"] == "master"


def test_forbidden_degrades_to_manual_link() -> None:
    fake = FakeGitHub()
    fake.fail("POST", "/pulls", 403)

    result = _publish(fake)

    assert result.state is PublishState.DEGRADED
    assert not result.completed
    assert result.manual_url == MANUAL_URL
    assert CHANGESET.branch in (result.warning or "")


def test_throttled_creation_is_retry_later_not_cooldown() -> None:
    fake = FakeGitHub()
    fake.fail("POST", "/pulls", 429)

    result = _publish(fake)

    assert result.state is PublishState.RETRY_LATER
    assert not result.completed
    assert "not the submission cooldown" in (result.error or "")
    assert result.manual_url == MANUAL_URL


def test_server_error_fails_but_keeps_manual_link() -> None:
    fake = FakeGitHub()
    fake.fail("POST", "/pulls", 500)

    result = _publish(fake)

    assert result.state is PublishState.FAILED
    assert not result.completed
    assert result.manual_url == MANUAL_URL


def test_secondary_rate_limit_is_retry_later() -> None:
    fake = FakeGitHub()
    fake.fail("POST", "/pulls", 403, headers={"retry-after": "60"})

    result = _publish(fake)

    assert result.state is PublishState.RETRY_LATER
    assert result.manual_url == MANUAL_URL
