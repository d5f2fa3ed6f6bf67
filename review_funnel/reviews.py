"""In-memory review inbox seeded with demo data."""

from __future__ import annotations

import uuid
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, List

from .schemas import Review, ReviewPlatform, ReviewStats, Visibility


def _seed_reviews(now: datetime) -> List[Review]:
    return [
        Review(
            id="rev-1",
            business_id="merlin-cambridge-001",
            reviewer_name="Sarah Jenkins",
            rating=5,
            text="Absolutely fantastic experience! The interface is so intuitive and sleek. The team was very helpful.",
            visibility=Visibility.PUBLIC,
            platform=ReviewPlatform.GOOGLE,
            created_at=now,
        ),
        Review(
            id="rev-2",
            business_id="merlin-cambridge-001",
            reviewer_name="John Doe",
            rating=2,
            text="Decent place, but the wait time was a bit longer than I anticipated. Hope they fix it.",
            visibility=Visibility.PRIVATE,
            platform=ReviewPlatform.GOOGLE,
            created_at=now - timedelta(hours=1),
        ),
        Review(
            id="rev-3",
            business_id="merlin-cambridge-001",
            reviewer_name="Michael Chen",
            rating=4,
            text="Really liked the vibe. The staff knows what they're doing. Will be back for sure.",
            visibility=Visibility.PUBLIC,
            platform=ReviewPlatform.YELP,
            created_at=now - timedelta(days=1),
            resolved=True,
        ),
    ]


class ReviewInbox:
    """Hold reviews per business so the dashboard can list and annotate them."""

    def __init__(self) -> None:
        self._reviews: Dict[str, Review] = {}

    @classmethod
    def seeded(cls) -> "ReviewInbox":
        inbox = cls()
        for review in _seed_reviews(datetime.now(timezone.utc)):
            inbox.add(review)
        return inbox

    def add(self, review: Review) -> Review:
        self._reviews[review.id] = review
        return review

    def get(self, review_id: str) -> Review | None:
        return self._reviews.get(review_id)

    def list_for_business(
        self,
        business_id: str,
        platform: ReviewPlatform | None = None,
        visibility: Visibility | None = None,
    ) -> List[Review]:
        """Return the business's reviews, newest first, optionally narrowed by platform or visibility."""

        reviews = [
            review
            for review in self._reviews.values()
            if review.business_id == business_id
            and (platform is None or review.platform is platform)
            and (visibility is None or review.visibility is visibility)
        ]
        return sorted(reviews, key=lambda review: review.created_at, reverse=True)

    def attach_draft(self, review_id: str, draft: str) -> Review | None:
        review = self._reviews.get(review_id)
        if review is None:
            return None
        updated = review.model_copy(update={"ai_draft": draft})
        self._reviews[review_id] = updated
        return updated

    def record_submission(
        self,
        business_id: str,
        rating: int,
        comment: str,
        visibility: Visibility,
        platform: ReviewPlatform | None,
    ) -> Review:
        """Store feedback captured by the funnel as a new inbox entry."""

        return self.add(
            Review(
                id=f"rev-{uuid.uuid4().hex[:12]}",
                business_id=business_id,
                reviewer_name="Guest reviewer",
                rating=rating,
                text=comment,
                visibility=visibility,
                platform=platform,
                created_at=datetime.now(timezone.utc),
            )
        )

    def stats(self, business_id: str) -> ReviewStats:
        reviews = self.list_for_business(business_id)
        distribution = Counter(review.rating for review in reviews)
        average = round(sum(review.rating for review in reviews) / len(reviews), 2) if reviews else 0.0
        return ReviewStats(
            business_id=business_id,
            total=len(reviews),
            average_rating=average,
            private_count=sum(1 for review in reviews if review.visibility is Visibility.PRIVATE),
            distribution={stars: distribution.get(stars, 0) for stars in range(5, 0, -1)},
            platform_counts=dict(Counter(review.platform.value for review in reviews if review.platform is not None)),
        )


review_inbox = ReviewInbox.seeded()
