import unittest

from agentbridge.config.verbosity import (
    DETAILED_EVENT_TYPES,
    ESSENTIAL_EVENT_TYPES,
    VerbositySettings,
    should_send_event,
)


class TestVerbosity(unittest.TestCase):
    def test_essential_events_ignore_flag(self):
        for event_type in ESSENTIAL_EVENT_TYPES:
            self.assertTrue(should_send_event(event_type, False))
            self.assertTrue(should_send_event(event_type, True))

    def test_detailed_events_follow_flag(self):
        for event_type in DETAILED_EVENT_TYPES:
            self.assertFalse(should_send_event(event_type, False))
            self.assertTrue(should_send_event(event_type, True))

    def test_unknown_events_follow_flag(self):
        self.assertFalse(should_send_event("brand_new_event", False))
        self.assertTrue(should_send_event("brand_new_event", True))

    def test_sets_do_not_overlap(self):
        self.assertEqual(ESSENTIAL_EVENT_TYPES & DETAILED_EVENT_TYPES, frozenset())

    def test_set_publishes_only_on_change(self):
        verbosity = VerbositySettings()
        changes = []
        verbosity.changes.subscribe(changes.append)

        self.assertEqual(verbosity.set(True), {"status": "ok", "showInnerThoughts": True})
        verbosity.set(True)
        verbosity.toggle()

        self.assertFalse(verbosity.show_inner_thoughts)
        self.assertEqual([event.payload for event in changes],
                         [{"showInnerThoughts": True}, {"showInnerThoughts": False}])


if __name__ == "__main__":
    unittest.main()
