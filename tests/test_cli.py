import json
from unittest.mock import MagicMock

from typer.testing import CliRunner

from closer_coach import cli
from closer_coach.llm_scorer import LLMScorer
from closer_coach.prompts import OBJECTION_SYSTEM_MESSAGE
from closer_coach.schemas import ALL_PHASES

runner = CliRunner()


def scoring_client():
    payload = json.dumps({
        "overall_score": 70,
        "scores": [{"phase": p, "score": 70, "feedback": "ok"} for p in ALL_PHASES],
        "summary": "Fine call.",
    })
    client = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = payload
    client.chat.completions.create.return_value = response
    return client


class TestParseCommand:
    def test_parse_text_and_asr(self, tmp_path):
        source = tmp_path / "raw"
        source.mkdir()
        (source / "labeled.txt").write_text(
            "PARENT: Hi, I'm interested in tutoring.\nREP: Great, this is Tom from MyEdSpace.\n"
        )
        (source / "audio.json").write_text(json.dumps({
            "segments": [{"start": 0, "end": 2, "text": "Hello"}, {"start": 5, "end": 6, "text": "Hi"}],
        }))
        out = tmp_path / "calls"

        result = runner.invoke(cli.app, ["parse", "--in", str(source), "--out", str(out), "--context", "warm_lead"])

        assert result.exit_code == 0
        labeled = json.loads((out / "labeled.json").read_text())
        assert [s["speaker"] for s in labeled["segments"]] == ["prospect", "rep"]
        assert labeled["call_context"] == "warm_lead"
        audio = json.loads((out / "audio.json").read_text())
        assert audio["source"] == "asr"

    def test_swap_speakers(self, tmp_path):
        source = tmp_path / "raw"
        source.mkdir()
        (source / "call.txt").write_text("REP: Hello\nPROSPECT: Hi\n")
        out = tmp_path / "calls"

        result = runner.invoke(cli.app, ["parse", "--in", str(source), "--out", str(out), "--swap-speakers"])

        assert result.exit_code == 0
        record = json.loads((out / "call.json").read_text())
        assert [s["speaker"] for s in record["segments"]] == ["prospect", "rep"]

    def test_missing_input(self, tmp_path):
        result = runner.invoke(cli.app, ["parse", "--in", str(tmp_path / "nope")])

        assert result.exit_code == 1

    def test_bad_role_hint(self, tmp_path):
        result = runner.invoke(cli.app, ["parse", "--in", str(tmp_path), "--role-hint", "both"])

        assert result.exit_code == 1

    def test_default_role_hint(self, tmp_path):
        source = tmp_path / "raw"
        source.mkdir()
        (source / "call.txt").write_text("REP: Hello\nPROSPECT: Hi\n")
        out = tmp_path / "calls"

        result = runner.invoke(cli.app, ["parse", "--in", str(source), "--out", str(out), "--role-hint", "default"])

        assert result.exit_code == 0
        assert (out / "call.json").exists()


class TestScoreCommand:
    def write_record(self, directory, turns=1):
        directory.mkdir()
        segments = []
        for i in range(turns):
            segments += [
                {"speaker": "rep", "text": f"Hello, this is Tom ({i})"},
                {"speaker": "prospect", "text": f"Hi Tom ({i})"},
            ]
        (directory / "c1.json").write_text(json.dumps({
            "call_id": "c1",
            "rep_name": "Tom",
            "source": "plaintext",
            "segments": segments,
        }))

    def test_objection_service_failure_keeps_scores(self, tmp_path, monkeypatch):
        calls = tmp_path / "calls"
        self.write_record(calls, turns=3)
        out = tmp_path / "out"
        client = scoring_client()
        scoring_response = client.chat.completions.create.return_value

        def create(**kwargs):
            if kwargs["messages"][0]["content"] == OBJECTION_SYSTEM_MESSAGE:
                raise TimeoutError("objection request timed out")
            return scoring_response

        client.chat.completions.create.side_effect = create
        monkeypatch.setattr(cli, "LLMScorer", lambda model: LLMScorer(model=model, client=client, retry_delay=0))

        result = runner.invoke(cli.app, ["score", "--in", str(calls), "--out", str(out), "--include-objections"])

        assert result.exit_code == 0
        scores = json.loads((out / "scores.json").read_text())
        assert scores[0]["result"]["overall_score"] == 70.0
        assert scores[0]["result"]["scores"][0]["feedback"] == "ok"
        # one scoring request plus three objection attempts
        assert client.chat.completions.create.call_count == 4

    def test_objection_classifier_crash_keeps_scores(self, tmp_path, monkeypatch):
        calls = tmp_path / "calls"
        self.write_record(calls, turns=3)
        out = tmp_path / "out"
        client = scoring_client()

        class BrokenClassifier:
            def __init__(self, scorer):
                pass

            def classify(self, call_id, segments):
                raise RuntimeError("classifier unavailable")

        monkeypatch.setattr(cli, "LLMScorer", lambda model: LLMScorer(model=model, client=client, retry_delay=0))
        monkeypatch.setattr(cli, "ObjectionClassifier", BrokenClassifier)

        result = runner.invoke(cli.app, ["score", "--in", str(calls), "--out", str(out), "--include-objections"])

        assert result.exit_code == 0
        scores = json.loads((out / "scores.json").read_text())
        assert scores[0]["call_id"] == "c1"
        assert scores[0]["result"]["overall_score"] == 70.0
        assert scores[0]["objections"] == []

    def test_score_writes_reports(self, tmp_path, monkeypatch):
        calls = tmp_path / "calls"
        self.write_record(calls)
        out = tmp_path / "out"
        client = scoring_client()
        monkeypatch.setattr(cli, "LLMScorer", lambda model: LLMScorer(model=model, client=client, retry_delay=0))

        result = runner.invoke(cli.app, ["score", "--in", str(calls), "--out", str(out)])

        assert result.exit_code == 0
        scores = json.loads((out / "scores.json").read_text())
        assert scores[0]["call_id"] == "c1"
        assert scores[0]["result"]["overall_score"] == 70.0
        assert (out / "scores.csv").exists()
        assert (out / "leaderboard.md").exists()

    def test_missing_api_key(self, tmp_path, monkeypatch):
        calls = tmp_path / "calls"
        self.write_record(calls)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        result = runner.invoke(cli.app, ["score", "--in", str(calls), "--out", str(tmp_path / "out")])

        assert result.exit_code == 1


class TestModelsCommand:
    def test_lists_models(self):
        result = runner.invoke(cli.app, ["models"])

        assert result.exit_code == 0
        assert "gpt-4o" in result.output
