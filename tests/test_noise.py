"""Tests for noise classification and candidate filtering."""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from engine.noise import NoiseRule, PatternNoiseClassifier, filter_candidate


class TestDefaultRules(unittest.TestCase):

    def setUp(self):
        self.classifier = PatternNoiseClassifier()

    def test_activity_narration(self):
        self.assertEqual(self.classifier.classify("Analyzing engine/session.py"), "activity")
        self.assertTrue(self.classifier.is_noise("Thought for 4s"))
        self.assertTrue(self.classifier.is_noise("Initiating step 2"))

    def test_long_narration_is_kept(self):
        line = "Reading " + "the configuration carefully " * 10
        self.assertGreater(len(line), 220)
        self.assertFalse(self.classifier.is_noise(line))

    def test_tool_output_headers(self):
        self.assertTrue(self.classifier.is_noise("jina-mcp-server / search_web"))
        self.assertTrue(self.classifier.is_noise("Full output written to /tmp/out.txt"))
        self.assertTrue(self.classifier.is_noise("output.txt#L10-20"))

    def test_slash_in_prose_is_kept(self):
        self.assertFalse(self.classifier.is_noise("and/or"))
        self.assertFalse(self.classifier.is_noise("Use read/write access"))

    def test_code_labels_and_footers(self):
        self.assertTrue(self.classifier.is_noise("python"))
        self.assertTrue(self.classifier.is_noise("Good   Bad"))
        self.assertFalse(self.classifier.is_noise("Good catch, the bug is in line 4."))

    def test_quota_popup(self):
        self.assertTrue(self.classifier.is_noise("Error You have exhausted your quota on this model."))

    def test_real_output_kept(self):
        self.assertIsNone(self.classifier.classify("The failing test expects a list, not a tuple."))
        self.assertIsNone(self.classifier.classify(""))


class TestFromConfig(unittest.TestCase):

    def test_custom_rules_added(self):
        classifier = PatternNoiseClassifier.from_config({
            "rules": [r"^step \d+ of \d+$", {"pattern": "^sponsored", "name": "ad"}],
        })
        self.assertTrue(classifier.is_noise("Step 2 of 5"))
        self.assertEqual(classifier.classify("Sponsored: buy now"), "ad")
        self.assertTrue(classifier.is_noise("Analyzing foo"))

    def test_defaults_can_be_dropped(self):
        classifier = PatternNoiseClassifier.from_config({"include_defaults": False})
        self.assertFalse(classifier.is_noise("Analyzing foo"))

    def test_max_length(self):
        classifier = PatternNoiseClassifier([NoiseRule("^note", max_length=10)])
        self.assertTrue(classifier.is_noise("note: hi"))
        self.assertFalse(classifier.is_noise("note: this is a long line"))


class TestFilterCandidate(unittest.TestCase):

    def setUp(self):
        self.classifier = PatternNoiseClassifier()

    def test_none_passthrough(self):
        result = filter_candidate(None, self.classifier)
        self.assertIsNone(result.text)
        self.assertFalse(result.noise_only)

    def test_noise_lines_dropped(self):
        text = "Analyzing main.py\nThe answer is 42.\n\n\n\nThought for 2s\nDone."
        result = filter_candidate(text, self.classifier)
        self.assertEqual(result.text, "The answer is 42.\n\nDone.")
        self.assertEqual(result.dropped, 2)
        self.assertFalse(result.noise_only)

    def test_all_noise(self):
        result = filter_candidate("Reading a.py\npython\nGood Bad", self.classifier)
        self.assertIsNone(result.text)
        self.assertTrue(result.noise_only)
        self.assertEqual(result.dropped, 3)

    def test_blank_candidate(self):
        result = filter_candidate(" \n\r\n ", self.classifier)
        self.assertIsNone(result.text)
        self.assertFalse(result.noise_only)

    def test_custom_classifier_protocol(self):
        class ShoutingIsNoise:
            def is_noise(self, line):
                return line.isupper()

        result = filter_candidate("HEY\nhello", ShoutingIsNoise())
        self.assertEqual(result.text, "hello")


if __name__ == "__main__":
    unittest.main()
