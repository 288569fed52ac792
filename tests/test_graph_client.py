import unittest
from datetime import date, datetime, timezone
from unittest import mock

from cadence.errors import NotFoundError
from cadence.graph_client import OutlookCalendarAdapter, OutlookTasksAdapter
from cadence.models import EventFilters, ProvidersConfig
from cadence.providers import EventChanges, TaskChanges


GRAPH = "https://graph.microsoft.com/v1.0"
START = datetime(2026, 10, 19, 11, 0, tzinfo=timezone.utc)
END = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

RAW_EVENT = {
    "id": "o1",
    "subject": "Budget review",
    "bodyPreview": "Numbers for Q4",
    "start": {"dateTime": "2026-10-19T11:00:00.0000000", "timeZone": "UTC"},
    "end": {"dateTime": "2026-10-19T12:00:00.0000000", "timeZone": "UTC"},
    "attendees": [{"emailAddress": {"address": "bo@x.com", "name": "Bo"}}],
}

LISTS = {"value": [{"id": "L-other", "displayName": "Errands"}, {"id": "L-main", "wellknownListName": "defaultList"}]}


def _routes(table):
    def handler(method, url, **kwargs):
        result = table.get((method, url))
        if isinstance(result, Exception):
            raise result
        return result

    return handler


class OutlookCalendarAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = OutlookCalendarAdapter("token", ProvidersConfig())

    def test_requests_utc_times(self) -> None:
        self.assertEqual(self.adapter.http.extra_headers, {"Prefer": 'outlook.timezone="UTC"'})

    def test_get_events_filters_by_start_and_query(self) -> None:
        payload = {
            "value": [
                RAW_EVENT,
                {**RAW_EVENT, "id": "o2", "subject": "Lunch", "bodyPreview": ""},
                {**RAW_EVENT, "id": "o3", "isCancelled": True},
            ]
        }
        with mock.patch.object(self.adapter.http, "request", return_value=payload) as request:
            events = self.adapter.get_events(EventFilters(time_min=START, time_max=END, query="budget"))

        self.assertEqual([event.id for event in events], ["o1"])
        self.assertEqual(events[0].description, "Numbers for Q4")
        params = request.call_args.kwargs["params"]
        self.assertEqual(
            params["$filter"],
            "start/dateTime ge '2026-10-19T11:00:00' and start/dateTime le '2026-10-19T12:00:00'",
        )
        self.assertEqual(params["$orderby"], "start/dateTime")
        self.assertEqual(params["$top"], 100)

    def test_create_event_sends_utc_wall_times(self) -> None:
        with mock.patch.object(self.adapter.http, "request", return_value=RAW_EVENT) as request:
            event = self.adapter.create_event(
                EventChanges(summary="Budget review", start=START, end=END, attendees=["bo@x.com"])
            )

        self.assertEqual(event.source, "outlook")
        self.assertEqual(request.call_args.args, ("POST", f"{GRAPH}/me/events"))
        body = request.call_args.kwargs["json"]
        self.assertEqual(body["start"], {"dateTime": "2026-10-19T11:00:00", "timeZone": "UTC"})
        self.assertEqual(body["attendees"], [{"emailAddress": {"address": "bo@x.com"}, "type": "required"}])

    def test_update_sends_only_changed_fields(self) -> None:
        url = f"{GRAPH}/me/events/o1"
        table = {("GET", url): RAW_EVENT, ("PATCH", url): {**RAW_EVENT, "subject": "Renamed"}}
        with mock.patch.object(self.adapter.http, "request", side_effect=_routes(table)) as request:
            event = self.adapter.update_event("o1", EventChanges(summary="Renamed"))

        self.assertEqual(event.title, "Renamed")
        self.assertEqual(request.call_args.kwargs["json"], {"subject": "Renamed"})


class OutlookTasksAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.adapter = OutlookTasksAdapter("token", ProvidersConfig())

    def test_create_task_goes_to_default_list(self) -> None:
        table = {
            ("GET", f"{GRAPH}/me/todo/lists"): LISTS,
            ("POST", f"{GRAPH}/me/todo/lists/L-main/tasks"): {"id": "t9", "title": "Renew passport"},
        }
        with mock.patch.object(self.adapter.http, "request", side_effect=_routes(table)) as request:
            task = self.adapter.create_task(TaskChanges(title="Renew passport", due=date(2026, 10, 22)))

        self.assertEqual(task.list_id, "L-main")
        self.assertEqual(
            request.call_args.kwargs["json"],
            {"title": "Renew passport", "dueDateTime": {"dateTime": "2026-10-22T00:00:00", "timeZone": "UTC"}},
        )

    def test_no_lists_is_not_found(self) -> None:
        with mock.patch.object(self.adapter.http, "request", return_value={"value": []}):
            with self.assertRaises(NotFoundError):
                self.adapter.create_task(TaskChanges(title="x"))

    def test_get_tasks_skips_completed(self) -> None:
        table = {
            ("GET", f"{GRAPH}/me/todo/lists"): LISTS,
            ("GET", f"{GRAPH}/me/todo/lists/L-other/tasks"): {
                "value": [{"id": "a", "title": "Groceries"}, {"id": "b", "title": "Old", "status": "completed"}]
            },
            ("GET", f"{GRAPH}/me/todo/lists/L-main/tasks"): {
                "value": [
                    {
                        "id": "c",
                        "title": "Renew passport",
                        "dueDateTime": {"dateTime": "2026-10-22T00:00:00.0000000", "timeZone": "UTC"},
                    }
                ]
            },
        }
        with mock.patch.object(self.adapter.http, "request", side_effect=_routes(table)):
            tasks = self.adapter.get_tasks(EventFilters())

        by_id = {task.id: task for task in tasks}
        self.assertEqual(set(by_id), {"a", "c"})
        self.assertEqual(by_id["c"].due, date(2026, 10, 22))
        self.assertEqual(by_id["c"].list_id, "L-main")
        self.assertEqual(by_id["a"].source, "outlook")

    def test_update_without_changes_rereads_task(self) -> None:
        url = f"{GRAPH}/me/todo/lists/L-main/tasks/c"
        table = {("GET", url): {"id": "c", "title": "Renew passport"}}
        with mock.patch.object(self.adapter.http, "request", side_effect=_routes(table)) as request:
            task = self.adapter.update_task("c", TaskChanges(), "L-main")

        self.assertEqual(task.title, "Renew passport")
        self.assertNotIn("PATCH", [call.args[0] for call in request.call_args_list])

    def test_clear_due_sends_null(self) -> None:
        url = f"{GRAPH}/me/todo/lists/L-main/tasks/c"
        table = {("GET", url): {"id": "c", "title": "x"}, ("PATCH", url): {"id": "c", "title": "x"}}
        with mock.patch.object(self.adapter.http, "request", side_effect=_routes(table)) as request:
            self.adapter.update_task("c", TaskChanges(clear_due=True), "L-main")

        self.assertEqual(request.call_args.kwargs["json"], {"dueDateTime": None})


if __name__ == "__main__":
    unittest.main()
