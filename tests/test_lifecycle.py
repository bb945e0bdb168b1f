from datetime import date, datetime, time

from lessongrid.errors import (
    BatchResult,
    ConflictError,
    PartialBatchFailure,
    ValidationError,
)
from lessongrid.lifecycle import MAKEUP_TAG, Scope, SessionDraft
from lessongrid.models import HistoryEvent, HistoryEventType, LessonSession, SessionStatus
from lessongrid.recurrence import Occurrence
from lessongrid.store import SessionFilter

from tests.support import BRANCH, DatabaseTestCase


MONDAY = date(2025, 3, 10)


class RescheduleTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.lesson = self.add_session(MONDAY, time(14, 0), time(15, 0))

    def events(self, session_id: int) -> list[HistoryEventType]:
        return [event.event_type for event in self.engine.history.list_for(session_id)]

    def test_reschedule_cancels_source_and_links_new_session(self) -> None:
        moved = self.engine.manager.reschedule(self.lesson, date(2025, 3, 12), actor="admin")

        self.assertEqual(self.lesson.status, SessionStatus.CANCELLED)
        self.assertEqual(self.lesson.rescheduled_to_id, moved.id)
        self.assertEqual(moved.rescheduled_from_id, self.lesson.id)
        self.assertEqual(moved.status, SessionStatus.SCHEDULED)
        self.assertEqual((moved.start_time, moved.end_time), (time(14, 0), time(15, 0)))
        self.assertEqual(moved.day_of_week, 2)
        self.assertEqual(self.events(self.lesson.id), [HistoryEventType.RESCHEDULED])
        self.assertEqual(self.events(moved.id), [HistoryEventType.CREATED])
        self.assertEqual(self.engine.history.list_for(moved.id)[0].changed_by, "admin")

    def test_new_start_keeps_duration(self) -> None:
        moved = self.engine.manager.reschedule(self.lesson.id, date(2025, 3, 12), time(16, 30))
        self.assertEqual(moved.end_time, time(17, 30))

    def test_second_reschedule_of_cancelled_source_is_rejected(self) -> None:
        self.engine.manager.reschedule(self.lesson, date(2025, 3, 12))
        with self.assertRaises(ValidationError):
            self.engine.manager.reschedule(self.lesson, date(2025, 3, 13))
        self.assertEqual(self.events(self.lesson.id), [HistoryEventType.RESCHEDULED])

    def test_conflicting_target_leaves_everything_untouched(self) -> None:
        blocker = self.add_session(date(2025, 3, 11), time(14, 0), time(14, 30), classroom="102")

        with self.assertRaises(ConflictError) as caught:
            self.engine.manager.reschedule(self.lesson, date(2025, 3, 11))

        self.assertEqual([c.session.id for c in caught.exception.conflicts], [blocker.id])
        payload = caught.exception.as_payload()
        self.assertEqual(payload["conflicts"][0]["conflicting_time_range"], "14:00-14:30")
        self.assertEqual(self.engine.store.get(self.lesson.id).status, SessionStatus.SCHEDULED)
        self.assertEqual(self.events(self.lesson.id), [])
        self.assertEqual(len(self.engine.store.list(SessionFilter())), 2)

    def test_past_target_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as caught:
            self.engine.manager.reschedule(self.lesson, date(2025, 3, 9))
        self.assertEqual(caught.exception.field, "lesson_date")

    def test_inverted_time_range_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.engine.manager.reschedule(
                self.lesson, date(2025, 3, 12), time(16, 0), time(15, 0)
            )

    def test_identical_placement_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.engine.manager.reschedule(self.lesson, MONDAY)

    def test_reschedule_can_change_teacher(self) -> None:
        moved = self.engine.manager.reschedule(
            self.lesson, date(2025, 3, 12), teacher_name="Петрова"
        )
        self.assertEqual(moved.teacher_name, "Петрова")
        self.assertEqual(moved.classroom, "101")

    def test_virtual_occurrence_is_materialized_first(self) -> None:
        template = self.add_template("1", time(10, 0), time(11, 0), classroom="102")
        week = SessionFilter(date_from=MONDAY, date_to=date(2025, 3, 16), classroom="102")
        virtual = self.engine.expander.expand(week)[0]
        self.assertTrue(virtual.is_virtual)

        moved = self.engine.manager.reschedule(virtual, date(2025, 3, 13))

        source = self.engine.store.get(moved.rescheduled_from_id)
        self.assertEqual(source.recurrence_source_id, template.id)
        self.assertEqual(source.status, SessionStatus.CANCELLED)
        self.assertEqual(
            self.events(source.id), [HistoryEventType.CREATED, HistoryEventType.RESCHEDULED]
        )
        after = self.engine.expander.expand(week)
        self.assertEqual(
            [(o.lesson_date, o.is_virtual) for o in after],
            [(date(2025, 3, 11), False), (date(2025, 3, 13), False)],
        )


class SeriesRescheduleTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.group = self.add_group()
        self.monday = self.add_session(MONDAY, time(14, 0), time(15, 0), group=self.group)
        self.wednesday = self.add_session(
            date(2025, 3, 12), time(14, 0), time(15, 0), group=self.group
        )
        self.next_monday = self.add_session(
            date(2025, 3, 17), time(14, 0), time(15, 0), group=self.group
        )
        self.done = self.add_session(
            date(2025, 3, 19),
            time(14, 0),
            time(15, 0),
            group=self.group,
            status=SessionStatus.COMPLETED,
        )

    def test_series_shifts_every_future_scheduled_session(self) -> None:
        result = self.engine.manager.reschedule(
            self.monday, date(2025, 3, 11), scope=Scope.SERIES
        )

        self.assertIsInstance(result, BatchResult)
        self.assertFalse(result.is_partial)
        self.assertEqual(
            sorted(session.lesson_date for session in result.succeeded),
            [date(2025, 3, 11), date(2025, 3, 13), date(2025, 3, 18)],
        )
        for source in (self.monday, self.wednesday, self.next_monday):
            self.assertEqual(source.status, SessionStatus.CANCELLED)
        self.assertEqual(self.done.status, SessionStatus.COMPLETED)

    def test_series_from_later_anchor_leaves_earlier_sessions(self) -> None:
        self.engine.manager.reschedule(self.wednesday, date(2025, 3, 13), scope=Scope.SERIES)
        self.assertEqual(self.monday.status, SessionStatus.SCHEDULED)
        self.assertEqual(self.next_monday.status, SessionStatus.CANCELLED)

    def test_series_reports_partial_failures(self) -> None:
        blocker = self.add_session(date(2025, 3, 13), time(14, 30), time(15, 30), classroom="102")

        result = self.engine.manager.reschedule(
            self.monday, date(2025, 3, 11), scope=Scope.SERIES
        )

        self.assertIsInstance(result, PartialBatchFailure)
        self.assertEqual(len(result.succeeded), 2)
        self.assertEqual(len(result.failed), 1)
        failure = result.failed[0]
        self.assertEqual(failure.session.id, self.wednesday.id)
        self.assertIsInstance(failure.error, ConflictError)
        self.assertEqual(failure.error.conflicts[0].session.id, blocker.id)
        self.assertEqual(self.wednesday.status, SessionStatus.SCHEDULED)
        self.assertTrue(result.as_payload()["partial"])

    def test_series_cancel_is_best_effort_per_item(self) -> None:
        result = self.engine.manager.cancel(
            self.wednesday, "Преподаватель в отпуске", scope=Scope.SERIES
        )
        self.assertEqual(
            [session.id for session in result.succeeded],
            [self.wednesday.id, self.next_monday.id],
        )
        self.assertEqual(self.monday.status, SessionStatus.SCHEDULED)
        self.assertEqual(self.done.status, SessionStatus.COMPLETED)


class CopyAndMakeupTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.lesson = self.add_session(MONDAY, time(14, 0), time(15, 0))

    def test_copy_creates_independent_session(self) -> None:
        copy = self.engine.manager.copy(self.lesson, date(2025, 3, 17))
        self.assertNotEqual(copy.id, self.lesson.id)
        self.assertEqual(copy.lesson_date, date(2025, 3, 17))
        self.assertEqual((copy.teacher_name, copy.classroom), ("Иванов", "101"))
        self.assertEqual((copy.start_time, copy.end_time), (time(14, 0), time(15, 0)))
        self.assertEqual(self.lesson.status, SessionStatus.SCHEDULED)
        self.assertIsNone(copy.rescheduled_from_id)

    def test_copy_onto_busy_slot_conflicts(self) -> None:
        self.add_session(date(2025, 3, 17), time(14, 30), time(16, 0), teacher="Петрова")
        with self.assertRaises(ConflictError):
            self.engine.manager.copy(self.lesson, date(2025, 3, 17))

    def test_copy_of_virtual_occurrence_does_not_materialize(self) -> None:
        self.add_template("2", time(10, 0), time(11, 0), classroom="102")
        week = SessionFilter(date_from=MONDAY, date_to=date(2025, 3, 16), classroom="102")
        virtual = self.engine.expander.expand(week)[0]

        copy = self.engine.manager.copy(virtual, date(2025, 3, 18))

        self.assertEqual(copy.classroom, "102")
        self.assertIsNone(copy.recurrence_source_id)
        self.assertTrue(self.engine.expander.expand(week)[0].is_virtual)

    def test_makeup_links_source(self) -> None:
        makeup = self.engine.manager.makeup(
            self.lesson, date(2025, 3, 15), time(10, 0), time(11, 0), classroom="102"
        )
        self.assertEqual(makeup.makeup_for_id, self.lesson.id)
        self.assertEqual(makeup.classroom, "102")
        self.assertTrue(makeup.notes.startswith(MAKEUP_TAG))
        self.assertEqual(self.lesson.status, SessionStatus.SCHEDULED)

    def test_makeup_in_the_past_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.engine.manager.makeup(self.lesson, date(2025, 3, 7), time(10, 0), time(11, 0))


class CancelAndCompleteTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.lesson = self.add_session(MONDAY, time(14, 0), time(15, 0))

    def test_blank_reason_changes_nothing(self) -> None:
        for reason in ("", "   "):
            with self.assertRaises(ValidationError) as caught:
                self.engine.manager.cancel(self.lesson, reason)
            self.assertEqual(caught.exception.field, "reason")
        self.assertEqual(self.lesson.status, SessionStatus.SCHEDULED)
        self.assertEqual(self.engine.history.list_for(self.lesson.id), [])

    def test_cancel_records_reason(self) -> None:
        self.engine.manager.cancel(self.lesson.id, "Болезнь", actor="admin")
        self.assertEqual(self.lesson.status, SessionStatus.CANCELLED)
        self.assertIn("Болезнь", self.lesson.notes)
        [event] = self.engine.history.list_for(self.lesson.id)
        self.assertEqual(event.event_type, HistoryEventType.CANCELLED)
        self.assertEqual(event.changed_by, "admin")

    def test_terminal_states_are_final(self) -> None:
        self.engine.manager.complete(self.lesson)
        with self.assertRaises(ValidationError):
            self.engine.manager.cancel(self.lesson, "Поздно")
        with self.assertRaises(ValidationError):
            self.engine.manager.complete(self.lesson)

    def test_complete_elapsed_only_touches_finished_sessions(self) -> None:
        morning = self.add_session(MONDAY, time(9, 0), time(10, 0), teacher="Петрова")
        yesterday = self.add_session(date(2025, 3, 9), time(9, 0), time(10, 0))
        tomorrow = self.add_session(date(2025, 3, 11), time(9, 0), time(10, 0))
        self.clock.advance_to(datetime(2025, 3, 10, 14, 30))

        completed = self.engine.manager.complete_elapsed()

        self.assertEqual(completed, 2)
        self.assertEqual(morning.status, SessionStatus.COMPLETED)
        self.assertEqual(yesterday.status, SessionStatus.COMPLETED)
        self.assertEqual(self.lesson.status, SessionStatus.SCHEDULED)
        self.assertEqual(tomorrow.status, SessionStatus.SCHEDULED)


class DetailsAndReassignTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.lesson = self.add_session(date(2025, 3, 12), time(14, 0), time(15, 0))

    def test_update_details_changes_notes_and_counts(self) -> None:
        self.engine.manager.update_details(self.lesson, {"notes": "Unit 5", "student_count": 6})
        self.assertEqual(self.lesson.notes, "Unit 5")
        self.assertEqual(self.lesson.student_count, 6)
        [event] = self.engine.history.list_for(self.lesson.id)
        self.assertEqual(event.event_type, HistoryEventType.UPDATED)

    def test_update_details_refuses_placement_fields(self) -> None:
        with self.assertRaises(ValidationError) as caught:
            self.engine.manager.update_details(self.lesson, {"lesson_date": date(2025, 3, 13)})
        self.assertEqual(caught.exception.field, "lesson_date")

    def test_reassign_substitutes_teacher(self) -> None:
        self.engine.manager.reassign(self.lesson, teacher_name="Петрова")
        self.assertEqual(self.lesson.teacher_name, "Петрова")
        self.assertEqual(self.lesson.status, SessionStatus.SCHEDULED)

    def test_reassign_checks_conflicts(self) -> None:
        self.add_session(date(2025, 3, 12), time(14, 45), time(15, 30), teacher="Петрова", classroom="102")
        with self.assertRaises(ConflictError):
            self.engine.manager.reassign(self.lesson, teacher_name="Петрова")
        self.assertEqual(self.engine.store.get(self.lesson.id).teacher_name, "Иванов")


class ScheduleTestCase(DatabaseTestCase):
    def draft(self, **overrides) -> SessionDraft:
        fields = {
            "teacher_name": "Иванов",
            "branch": BRANCH,
            "classroom": "101",
            "lesson_date": MONDAY,
            "start_time": time(14, 0),
            "end_time": time(15, 0),
        }
        fields.update(overrides)
        return SessionDraft(**fields)

    def test_schedule_same_day_is_allowed(self) -> None:
        session = self.engine.manager.schedule(self.draft())
        self.assertEqual(session.status, SessionStatus.SCHEDULED)
        self.assertEqual(
            [e.event_type for e in self.engine.history.list_for(session.id)],
            [HistoryEventType.CREATED],
        )

    def test_schedule_range_collects_failed_days(self) -> None:
        self.add_session(date(2025, 3, 12), time(14, 0), time(15, 0), classroom="102")

        result = self.engine.manager.schedule_range(
            self.draft(), MONDAY, date(2025, 3, 21), [0, 2]
        )

        self.assertEqual(
            [session.lesson_date for session in result.succeeded],
            [date(2025, 3, 10), date(2025, 3, 17), date(2025, 3, 19)],
        )
        self.assertEqual([failure.lesson_date for failure in result.failed], [date(2025, 3, 12)])
        self.assertIsNone(result.failed[0].session)

    def test_schedule_range_needs_weekdays(self) -> None:
        with self.assertRaises(ValidationError):
            self.engine.manager.schedule_range(self.draft(), MONDAY, date(2025, 3, 21), [])


class VirtualTargetTestCase(DatabaseTestCase):
    """Operations on template days roll back the materialized row when rejected."""

    def setUp(self) -> None:
        super().setUp()
        self.template = self.add_template("0", time(10, 0), time(11, 0))
        self.virtual = Occurrence.from_template(self.template, date(2025, 3, 17))

    def assertNothingMaterialized(self) -> None:
        rows = self.engine.store.list(
            SessionFilter(recurrence_source_ids=frozenset({self.template.id}))
        )
        self.assertEqual(rows, [])
        self.assertEqual(HistoryEvent.query.count(), 0)

    def test_rejected_reschedule_to_past_leaves_no_row(self) -> None:
        with self.assertRaises(ValidationError) as caught:
            self.engine.manager.reschedule(
                self.virtual, date(2025, 3, 1), time(12, 0), time(13, 0)
            )
        self.assertEqual(caught.exception.field, "lesson_date")
        self.assertEqual(LessonSession.query.count(), 0)
        self.assertNothingMaterialized()

    def test_identical_placement_leaves_no_row(self) -> None:
        with self.assertRaises(ValidationError):
            self.engine.manager.reschedule(self.virtual, date(2025, 3, 17))
        self.assertNothingMaterialized()

    def test_conflicting_reschedule_leaves_no_row(self) -> None:
        self.add_session(date(2025, 3, 18), time(10, 0), time(11, 0), classroom="102")
        with self.assertRaises(ConflictError):
            self.engine.manager.reschedule(self.virtual, date(2025, 3, 18))
        self.assertEqual(LessonSession.query.count(), 1)
        self.assertNothingMaterialized()

    def test_conflicting_reassign_leaves_no_row(self) -> None:
        self.add_session(date(2025, 3, 17), time(10, 30), time(11, 30), teacher="Петрова", classroom="102")
        with self.assertRaises(ConflictError):
            self.engine.manager.reassign(self.virtual, teacher_name="Петрова")
        self.assertNothingMaterialized()

    def test_rejected_details_update_leaves_no_row(self) -> None:
        self.add_session(date(2025, 3, 17), time(10, 0), time(11, 0), classroom="202")
        with self.assertRaises(ConflictError):
            self.engine.manager.update_details(self.virtual, {"notes": "Unit 6"})
        self.assertEqual(LessonSession.query.count(), 1)
        self.assertNothingMaterialized()

    def test_materialize_refuses_double_booking(self) -> None:
        one_off = self.add_session(date(2025, 3, 17), time(10, 0), time(11, 0), classroom="202")

        with self.assertRaises(ConflictError) as caught:
            self.engine.manager.materialize(self.template.id, date(2025, 3, 17))

        self.assertEqual([c.session.id for c in caught.exception.conflicts], [one_off.id])
        active = self.engine.store.list(
            SessionFilter(exclude_status=frozenset({SessionStatus.CANCELLED}))
        )
        self.assertEqual([session.id for session in active], [one_off.id])
        self.assertNothingMaterialized()

    def test_complete_of_double_booked_day_is_refused(self) -> None:
        self.add_session(date(2025, 3, 17), time(10, 0), time(11, 0), classroom="202")
        with self.assertRaises(ConflictError):
            self.engine.manager.complete(self.virtual)
        self.assertNothingMaterialized()

    def test_double_booked_day_can_still_be_moved_away(self) -> None:
        self.add_session(date(2025, 3, 17), time(10, 0), time(11, 0), classroom="202")

        moved = self.engine.manager.reschedule(self.virtual, date(2025, 3, 18))

        source = self.engine.store.get(moved.rescheduled_from_id)
        self.assertEqual(source.recurrence_source_id, self.template.id)
        self.assertEqual(source.status, SessionStatus.CANCELLED)
        self.assertEqual(moved.lesson_date, date(2025, 3, 18))

    def test_double_booked_day_can_still_be_cancelled(self) -> None:
        self.add_session(date(2025, 3, 17), time(10, 0), time(11, 0), classroom="202")
        cancelled = self.engine.manager.cancel(self.virtual, "Занят преподаватель")
        self.assertEqual(cancelled.status, SessionStatus.CANCELLED)
        self.assertEqual(cancelled.recurrence_source_id, self.template.id)


class SameDayMoveTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.lesson = self.add_session(date(2025, 3, 12), time(10, 0), time(11, 30))

    def test_move_past_midnight_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as caught:
            self.engine.manager.reschedule(self.lesson, date(2025, 3, 13), time(23, 0))

        self.assertEqual(caught.exception.field, "end_time")
        self.assertEqual(self.engine.store.get(self.lesson.id).status, SessionStatus.SCHEDULED)
        self.assertEqual(len(self.engine.store.list(SessionFilter())), 1)
        self.assertEqual(self.engine.history.list_for(self.lesson.id), [])

    def test_late_move_that_fits_keeps_duration(self) -> None:
        moved = self.engine.manager.reschedule(self.lesson, date(2025, 3, 13), time(22, 0))
        self.assertEqual((moved.start_time, moved.end_time), (time(22, 0), time(23, 30)))


class StudentOverlapTestCase(DatabaseTestCase):
    def test_shared_student_does_not_block_scheduling(self) -> None:
        first = self.add_group("English A1", ("Анна", "Борис"))
        anna = first.students[0]
        self.add_session(date(2025, 3, 12), time(14, 0), time(15, 0), group=first)

        session = self.engine.manager.schedule(
            SessionDraft(
                teacher_name="Петрова",
                branch=BRANCH,
                classroom="102",
                lesson_date=date(2025, 3, 12),
                start_time=time(14, 30),
                end_time=time(15, 30),
                student_id=anna.id,
                student_ids=(anna.id,),
            )
        )

        self.assertEqual(session.status, SessionStatus.SCHEDULED)
        self.assertEqual(session.student_names(), ["Анна"])


class VirtualSeriesAnchorTestCase(DatabaseTestCase):
    def test_failed_virtual_anchor_is_reported_by_date(self) -> None:
        group = self.add_group()
        template = self.add_template("0", time(10, 0), time(11, 0), group=group)
        later = self.add_session(date(2025, 3, 19), time(10, 0), time(11, 0), group=group)
        self.add_session(date(2025, 3, 18), time(10, 0), time(11, 0), classroom="102")

        result = self.engine.manager.reschedule(
            Occurrence.from_template(template, date(2025, 3, 17)),
            date(2025, 3, 18),
            scope=Scope.SERIES,
        )

        self.assertIsInstance(result, PartialBatchFailure)
        self.assertEqual([s.lesson_date for s in result.succeeded], [date(2025, 3, 20)])
        [failure] = result.failed
        self.assertIsNone(failure.session)
        self.assertEqual(failure.lesson_date, date(2025, 3, 17))
        self.assertIsInstance(failure.error, ConflictError)
        self.assertEqual(self.engine.store.get(later.id).status, SessionStatus.CANCELLED)
        rows = self.engine.store.list(
            SessionFilter(recurrence_source_ids=frozenset({template.id}))
        )
        self.assertEqual(rows, [])
