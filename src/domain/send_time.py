from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable


# Indexed by datetime.weekday(): Monday == 0.
DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
BUSINESS_HOURS = "Business Hours"
EVENING = "Evening"
LATE_NIGHT = "Late Night/Early Morning"
SEND_LEAD_HOURS = 2


def percent(count: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(count * 100 / total + 0.5)


def hour_key(hour: int) -> str:
    return f"{hour}:00"


def time_zone_bucket(hour: int) -> str:
    if 9 <= hour <= 17:
        return BUSINESS_HOURS
    if 18 <= hour <= 22:
        return EVENING
    return LATE_NIGHT


def optimal_send_hour(peak_hour: int) -> int:
    return (peak_hour - SEND_LEAD_HOURS) % 24


def _ranked(counts: Counter[str]) -> list[tuple[str, int]]:
    # sorted() is stable, so ties keep first-seen order.
    return sorted(counts.items(), key=lambda item: item[1], reverse=True)


def _insights(
    day_counts: Counter[str],
    hour_counts: Counter[str],
    total: int,
    opens: int,
    clicks: int,
) -> list[str]:
    insights: list[str] = []
    ranked_days = _ranked(day_counts)
    if ranked_days:
        day, count = ranked_days[0]
        insights.append(f"{day} is your best performing day with {percent(count, total)}% of engagement")

    ranked_hours = _ranked(hour_counts)
    if ranked_hours:
        hour, count = ranked_hours[0]
        insights.append(f"Peak engagement time is {hour} with {percent(count, total)}% of engagement")

    business = sum(
        count for key, count in hour_counts.items() if 9 <= int(key.split(":")[0]) <= 17
    )
    insights.append(
        f"{percent(business, total)}% of engagement happens during business hours (9 AM - 5 PM)"
    )
    insights.append(
        f"Your emails generate {percent(opens, total)}% opens and {percent(clicks, total)}% clicks"
    )
    return insights


def analyze_engagement(
    opened_at: Iterable[datetime],
    clicked_at: Iterable[datetime],
    *,
    top_days: int = 3,
    top_hours: int = 5,
) -> dict[str, Any]:
    """Bucket engagement timestamps and derive recommended send times.

    Timestamps are bucketed in UTC. Each top hour gets a send time two hours
    ahead of the peak so messages are waiting when recipients engage.
    """
    day_counts: Counter[str] = Counter()
    hour_counts: Counter[str] = Counter()
    zone_counts: Counter[str] = Counter()
    opens = 0
    clicks = 0

    def _add(moment: datetime) -> None:
        utc = moment.astimezone(timezone.utc) if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
        day_counts[DAY_NAMES[utc.weekday()]] += 1
        hour_counts[hour_key(utc.hour)] += 1
        zone_counts[time_zone_bucket(utc.hour)] += 1

    for moment in opened_at:
        _add(moment)
        opens += 1
    for moment in clicked_at:
        _add(moment)
        clicks += 1

    total = opens + clicks
    best_days = [
        {"day": day, "count": count, "percentage": percent(count, total)}
        for day, count in _ranked(day_counts)[:top_days]
    ]
    best_hours = [
        {"hour": hour, "count": count, "percentage": percent(count, total)}
        for hour, count in _ranked(hour_counts)[:top_hours]
    ]
    best_time_zones = [
        {"time_zone": zone, "count": count, "percentage": percent(count, total)}
        for zone, count in _ranked(zone_counts)
    ]
    optimal_send_times = []
    for item in best_hours:
        send_hour = hour_key(optimal_send_hour(int(item["hour"].split(":")[0])))
        optimal_send_times.append(
            {
                "send_time": send_hour,
                "target_open_time": item["hour"],
                "reasoning": f"Send at {send_hour} to target opens around {item['hour']}",
            }
        )

    return {
        "best_days": best_days,
        "best_hours": best_hours,
        "best_time_zones": best_time_zones,
        "optimal_send_times": optimal_send_times,
        "insights": _insights(day_counts, hour_counts, total, opens, clicks) if total else [],
        "total_opens": opens,
        "total_clicks": clicks,
        "data_points": total,
    }
