import sys
import unittest
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

import loan_fixtures  # noqa: E402,F401  (puts the app dir on sys.path)

from services.errors import InvalidReportError  # noqa: E402
from services.notes_codec import (  # noqa: E402
    DamageReport,
    LineKind,
    decode_notes,
    encode_notes,
    encode_resource_note,
    scan_line,
)


def _as_set(reports):
    return {
        (
            report.resource_id,
            tuple(report.damages),
            report.damage_note,
            tuple(report.suggestions),
            report.suggestion_note,
        )
        for report in reports
    }


class DecodeTests(unittest.TestCase):
    def test_scenario_notes_decode_to_single_report(self):
        parsed = decode_notes('[Resource ID R1]\nDamages: [Cracked Screen, Broken Hinge] | Notes: "dropped"')

        self.assertIsNone(parsed.timestamp)
        self.assertEqual(len(parsed.reports), 1)
        report = parsed.reports[0]
        self.assertEqual(report.resource_id, "R1")
        self.assertEqual(report.damages, ["Cracked Screen", "Broken Hinge"])
        self.assertEqual(report.damage_note, "dropped")
        self.assertEqual(report.suggestions, [])

    def test_empty_and_prose_decode_to_no_reports(self):
        for text in (None, "", "   \n  ", "arbitrary prose", "The projector was returned late."):
            with self.subTest(text=text):
                parsed = decode_notes(text)
                self.assertEqual(parsed.reports, [])

    def test_leading_bracket_line_is_timestamp(self):
        parsed = decode_notes('[2024-01-15 10:30:00]\n[Resource ID R1]\nDamages: [Dead Pixel]')
        self.assertEqual(parsed.timestamp, "2024-01-15 10:30:00")
        self.assertEqual(parsed.reports[0].damages, ["Dead Pixel"])

    def test_leading_resource_marker_is_not_a_timestamp(self):
        parsed = decode_notes("[Resource ID R9]\nSuggestions: [Replace Battery]")
        self.assertIsNone(parsed.timestamp)
        self.assertEqual(parsed.reports[0].resource_id, "R9")
        self.assertEqual(parsed.reports[0].suggestions, ["Replace Battery"])

    def test_marker_context_carries_to_following_lines(self):
        text = "\n".join(
            [
                "[Resource ID R1]",
                'Damages: [Scratch] | Notes: "lid"',
                'Suggestions: [Clean Keyboard] | Additional Notes: "sticky keys"',
                "[Resource ID R2]",
                "Damages: [Missing Key]",
                "[Resource ID R3]",
            ]
        )
        reports = decode_notes(text).by_resource()

        self.assertEqual(set(reports), {"R1", "R2"})
        self.assertEqual(reports["R1"].damages, ["Scratch"])
        self.assertEqual(reports["R1"].damage_note, "lid")
        self.assertEqual(reports["R1"].suggestions, ["Clean Keyboard"])
        self.assertEqual(reports["R1"].suggestion_note, "sticky keys")
        self.assertEqual(reports["R2"].damages, ["Missing Key"])

    def test_repeated_blocks_for_same_resource_merge(self):
        text = "\n".join(
            [
                "[Resource ID R1]",
                'Damages: [Scratch] | Notes: "first"',
                "[Resource ID R2]",
                "Damages: [Dent]",
                "[Resource ID R1]",
                'Damages: [Dent] | Notes: "second"',
            ]
        )
        report = decode_notes(text).by_resource()["R1"]
        self.assertEqual(report.damages, ["Scratch", "Dent"])
        self.assertEqual(report.damage_note, "first second")

    def test_lines_without_marker_attach_to_default(self):
        parsed = decode_notes("Damages: [Loose Cable]")
        self.assertEqual(parsed.reports[0].resource_id, "default")

    def test_noise_is_skipped(self):
        text = "\n".join(
            [
                "[not closed",
                "[Resource ID ]",
                "Damages: broken",
                "[Resource ID R1]",
                "random remark",
                "Damages: [Cracked Screen]",
            ]
        )
        parsed = decode_notes(text)
        self.assertEqual(_as_set(parsed.reports), {("R1", ("Cracked Screen",), "", (), "")})

    def test_scan_line_kinds(self):
        self.assertEqual(scan_line("[Resource ID R1]").kind, LineKind.RESOURCE_MARKER)
        self.assertEqual(scan_line("Damages: [A]").kind, LineKind.DAMAGE_BLOCK)
        self.assertEqual(scan_line("Suggestions: [B]").kind, LineKind.SUGGESTION_BLOCK)
        self.assertEqual(scan_line("hello").kind, LineKind.UNRECOGNIZED)

    def test_grammar_only_counts_at_line_start(self):
        self.assertEqual(scan_line("see [Resource ID R2]").kind, LineKind.UNRECOGNIZED)
        self.assertEqual(scan_line("[Resource ID R2] and more").kind, LineKind.UNRECOGNIZED)
        self.assertEqual(scan_line("returned with Damages: [Dent]").kind, LineKind.UNRECOGNIZED)

        token = scan_line('Damages: [Scratch] | Notes: "see Suggestions: [Wipe]"')
        self.assertEqual(token.kind, LineKind.DAMAGE_BLOCK)
        self.assertEqual(token.tags, ("Scratch",))
        self.assertEqual(token.note, "see Suggestions: [Wipe]")


class EncodeTests(unittest.TestCase):
    def test_encode_format(self):
        text = encode_notes(
            [
                DamageReport("R1", damages=["Cracked Screen", "Broken Hinge"], damage_note="dropped"),
                DamageReport("R2", suggestions=["Clean Fan"]),
            ],
            timestamp="2024-01-15 10:30:00",
        )
        self.assertEqual(
            text,
            "\n".join(
                [
                    "[2024-01-15 10:30:00]",
                    "[Resource ID R1]",
                    'Damages: [Cracked Screen, Broken Hinge] | Notes: "dropped"',
                    "[Resource ID R2]",
                    "Suggestions: [Clean Fan]",
                ]
            ),
        )

    def test_empty_reports_and_blank_ids_are_omitted(self):
        text = encode_notes([DamageReport("R1"), DamageReport("", damages=["Scratch"])], timestamp="now")
        self.assertEqual(text, "")

    def test_round_trip(self):
        reports = [
            DamageReport("R1", damages=["Cracked Screen", "Broken Hinge"], damage_note="dropped"),
            DamageReport("R2", suggestions=["Clean Keyboard"], suggestion_note='says "sticky"'),
            DamageReport("R3", damages=["Dent"], suggestions=["Label"], suggestion_note="relabel"),
            DamageReport("R4", damage_note="only a note"),
            DamageReport("R5"),
        ]
        decoded = decode_notes(encode_notes(reports, timestamp="2024-01-15 10:30:00"))

        self.assertEqual(decoded.timestamp, "2024-01-15 10:30:00")
        self.assertEqual(_as_set(decoded.reports), _as_set(r for r in reports if r.has_signal()))

    def test_multiline_note_is_flattened(self):
        text = encode_notes([DamageReport("R1", damages=["Scratch"], damage_note="left\nside")])
        self.assertEqual(decode_notes(text).reports[0].damage_note, "left side")

    def test_resource_note_has_no_marker(self):
        note = encode_resource_note(DamageReport("R1", damages=["Scratch"]), timestamp="2024-01-15 10:30:00")
        self.assertEqual(note, "[2024-01-15 10:30:00]\nDamages: [Scratch]")
        self.assertIsNone(encode_resource_note(DamageReport("R1")))

    def test_round_trip_with_grammar_in_notes(self):
        reports = [
            DamageReport("R1", damages=["Scratch"], damage_note="same as [Resource ID R2] last week"),
            DamageReport("R2", damages=["Dent"], damage_note="see Suggestions: [Wipe]"),
            DamageReport("R3", suggestions=["Label"], suggestion_note='Damages: [Fake] | Notes: "x"'),
            DamageReport("R4", damages=["Loose Key"], damage_note='quoted "end"'),
        ]
        decoded = decode_notes(encode_notes(reports, timestamp="2024-01-15 10:30:00"))

        self.assertEqual(_as_set(decoded.reports), _as_set(reports))

    def test_tags_breaking_the_grammar_are_rejected(self):
        for tag in ("Key [F5] missing", "Screen, left corner"):
            with self.subTest(tag=tag):
                with self.assertRaises(InvalidReportError):
                    encode_notes([DamageReport("R1", damages=[tag], damage_note="x")])
        with self.assertRaises(InvalidReportError):
            encode_notes([DamageReport("R1", suggestions=["Wipe]"])])
        with self.assertRaises(InvalidReportError):
            encode_resource_note(DamageReport("R1", damages=["a, b"]))

    def test_resource_ids_with_brackets_are_rejected(self):
        with self.assertRaises(InvalidReportError):
            encode_notes([DamageReport("R1] extra", damages=["Scratch"])])

    def test_commas_without_space_stay_in_one_tag(self):
        text = encode_notes([DamageReport("R1", damages=["Screen,left corner", "Hinge"])])
        self.assertEqual(decode_notes(text).reports[0].damages, ["Screen,left corner", "Hinge"])


if __name__ == "__main__":
    unittest.main()
