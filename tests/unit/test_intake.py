"""
Unit tests for path intake: normalization, the material filter, the soft-split
heuristics, chat rendering and the two-pass confirmation conversation.
"""
import json
import uuid
from types import SimpleNamespace

import pytest

from src.core.exceptions import ConfigurationError
from src.pipeline.intake_messages import (
    ACK_TEXT,
    KIND_ACK,
    KIND_QUESTIONS,
    KIND_REVIEW,
    append_intake_message,
    assistant_context_since,
    build_workflow_v1,
    format_ack_md,
    format_intake_questions_md,
    format_intake_summary_md,
    latest_questions_message,
    user_answer_after,
    user_context_before,
)
from src.pipeline.intake_normalize import (
    STRUCTURE_QUESTION_ID,
    add_structure_question,
    build_fallback_intake,
    build_intake_material_filter,
    has_weak_notes,
    intake_paths_brief_json,
    normalize_intake_paths,
    split_looks_soft,
)
from src.pipeline.path_intake import build_intake_excerpts, run_path_intake
from src.pipeline.stage import BuildDeps, StageInput
from tests.fakes import RecordingNotifier, ScriptedLLM, make_chunk, make_file


def ids(*files):
    return [str(f.id) for f in files]


@pytest.fixture
def files(set_id):
    return [make_file(set_id, "a.pdf"), make_file(set_id, "b.pdf"), make_file(set_id, "c.pdf")]


# ========================================
# NORMALIZATION
# ========================================


class TestNormalizeIntakePaths:
    def test_duplicate_ids_and_leftovers(self, files):
        a, b, c = files
        intake = {
            "paths": [
                {"path_id": "p", "title": "One", "core_file_ids": [str(a.id)]},
                {"path_id": "p", "title": "Two", "core_file_ids": [str(b.id), str(a.id)]},
            ],
            "primary_path_id": "missing",
        }

        normalize_intake_paths(intake, files)

        paths = intake["paths"]
        assert [p["path_id"] for p in paths] == ["p", "p_2", "path_3"]
        assert paths[1]["core_file_ids"] == [str(b.id)]
        assert paths[2]["title"] == "Additional materials"
        assert paths[2]["core_file_ids"] == [str(c.id)]
        assert intake["primary_path_id"] == "p"
        assert intake["material_alignment"]["mode"] == "multi_goal"

    def test_every_file_in_exactly_one_path(self, files):
        a, b, c = files
        intake = {
            "paths": [
                {"path_id": "x", "core_file_ids": [str(a.id)], "support_file_ids": [str(a.id), str(b.id)]},
                {"path_id": "y", "core_file_ids": [str(b.id), "unknown"], "support_file_ids": []},
                {"path_id": "z", "core_file_ids": [str(c.id)]},
            ]
        }

        normalize_intake_paths(intake, files)

        placed = [fid for p in intake["paths"] for fid in p["core_file_ids"] + p["support_file_ids"]]
        assert sorted(placed) == sorted(ids(*files))
        assert [p["path_id"] for p in intake["paths"]] == ["x", "z"]
        assert intake["paths"][0]["support_file_ids"] == [str(b.id)]

    def test_missing_paths_default_to_single(self, files):
        intake = {"combined_goal": "Pass the CCNA"}

        normalize_intake_paths(intake, files)

        (path,) = intake["paths"]
        assert path["path_id"] == "path_1"
        assert path["goal"] == "Pass the CCNA"
        assert path["core_file_ids"] == ids(*files)
        assert intake["material_alignment"]["mode"] == "single_goal"

    def test_file_intents_repaired(self, files):
        a, _, _ = files
        intake = {"file_intents": [{"file_id": str(a.id)}, {"file_id": "ghost"}, "bad"]}

        normalize_intake_paths(intake, files)

        intents = intake["file_intents"]
        assert [i["file_id"] for i in intents] == ids(*files)
        assert intents[0]["original_name"] == "a.pdf"
        assert intents[0]["alignment"] == "unclear"
        assert intents[1]["aim"] == "Unknown (missing from intake)"


class TestFallbackAndFilter:
    def test_fallback_intake(self, files):
        summary = SimpleNamespace(subject="Networking", level="intro")

        intake = build_fallback_intake(files, summary, " notes ")

        assert intake["combined_goal"] == "Networking"
        assert intake["audience_level_guess"] == "intro"
        assert intake["paths"][0]["core_file_ids"] == ids(*files)
        assert intake["material_alignment"]["mode"] == "unclear"
        assert intake["user_context"] == "notes"

    def test_filter_excludes_noise_and_prepends_goal_seed(self, set_id, files):
        a, b, c = files
        seed = make_file(set_id, "Learning_Goal.txt")
        intake = {
            "material_alignment": {"mode": "single_goal", "include_file_ids": [str(a.id)], "exclude_file_ids": [str(b.id)]},
            "file_intents": [{"file_id": str(c.id), "alignment": "noise"}],
            "paths": [{"path_id": "p"}],
        }

        flt = build_intake_material_filter(files + [seed], intake)

        assert flt["include_file_ids"] == [str(seed.id), str(a.id)]
        assert flt["exclude_file_ids"] == [str(b.id)]
        assert flt["noise_file_ids"] == [str(c.id)]
        assert flt["mode"] == "single_goal"

    def test_multi_goal_includes_every_file(self, files):
        intake = {"material_alignment": {"mode": "multi_goal", "include_file_ids": [str(files[0].id)]}, "paths": []}

        assert build_intake_material_filter(files, intake)["include_file_ids"] == ids(*files)

    def test_include_from_primary_flags(self, files):
        a, b, _ = files
        intake = {
            "material_alignment": {},
            "file_intents": [
                {"file_id": str(a.id), "include_in_primary_path": True},
                {"file_id": str(b.id), "include_in_primary_path": False},
            ],
        }

        flt = build_intake_material_filter(files, intake)

        assert flt["include_file_ids"] == [str(a.id)]
        assert flt["mode"] == "unclear"


class TestPathsBrief:
    def test_single_path_is_empty(self, files):
        intake = build_fallback_intake(files, None)

        assert intake_paths_brief_json({"intake": intake}) == ""
        assert intake_paths_brief_json(None) == ""

    def test_multi_path_uses_names(self, files):
        a, b, c = files
        intake = {
            "material_alignment": {"mode": "multi_goal"},
            "file_intents": [{"file_id": str(f.id), "original_name": f.original_name} for f in files],
            "paths": [
                {"path_id": "p2", "title": "Routing", "core_file_ids": [str(b.id), str(c.id)]},
                {"path_id": "p1", "title": "Transport", "core_file_ids": [str(a.id)]},
            ],
            "primary_path_id": "p1",
        }

        brief = json.loads(intake_paths_brief_json({"intake": intake}, max_files_per_path=1))

        assert [p["path_id"] for p in brief["paths"]] == ["p1", "p2"]
        assert brief["paths"][1]["core_files"] == ["b.pdf"]
        assert brief["mode"] == "multi_goal"


class TestSoftSplit:
    @pytest.mark.parametrize(
        "kwargs,expected",
        [
            (dict(max_jaccard=0.35, min_confidence=0.9), True),
            (dict(max_jaccard=0.25, min_confidence=0.5), True),
            (dict(max_jaccard=0.25, min_confidence=0.6), False),
            (dict(max_jaccard=0.0, min_confidence=0.9, max_cosine=0.72), True),
            (dict(max_jaccard=0.0, min_confidence=0.9, max_pair_score=0.7), True),
            (dict(max_jaccard=0.0, min_confidence=0.9, weak_notes=True), True),
            (dict(max_jaccard=0.1, min_confidence=0.9, max_cosine=0.5), False),
        ],
    )
    def test_split_looks_soft(self, kwargs, expected):
        assert split_looks_soft(**kwargs) is expected

    def test_weak_notes(self):
        assert has_weak_notes([{"confidence": 0.9, "notes": "Maybe belongs elsewhere"}])
        assert has_weak_notes([{"confidence": 0.4, "notes": ""}])
        assert not has_weak_notes([{"confidence": 0.9, "notes": "solid"}])

    def test_structure_question_added_once(self):
        intake = {"clarifying_questions": [{"id": "deadline", "question": "When?"}]}

        add_structure_question(intake)
        add_structure_question(intake)

        assert [q["id"] for q in intake["clarifying_questions"]] == ["deadline", STRUCTURE_QUESTION_ID]
        assert intake["needs_clarification"] is True


# ========================================
# CHAT RENDERING AND THREAD READERS
# ========================================


def msg(seq, role, content, kind=None):
    return SimpleNamespace(id=uuid.uuid4(), seq=seq, role=role, content=content, meta={"kind": kind} if kind else {})


class TestMessages:
    def test_summary_md(self, files):
        a, b, _ = files
        intake = {
            "combined_goal": "Networking",
            "learning_intent": {"goal_kind": "exam", "priority_topics": ["tcp", "tcp", "udp"]},
            "file_intents": [{"file_id": str(f.id), "original_name": f.original_name} for f in files],
            "material_alignment": {"include_file_ids": [str(a.id)], "noise_file_ids": [str(b.id)]},
            "paths": [{"title": "One"}, {"title": "Two"}],
        }

        md = format_intake_summary_md(intake)

        assert "**Goal**: Networking" in md
        assert "**Use case**: exam" in md
        assert "**Focus**: tcp • udp" in md
        assert "**Materials used**: a.pdf" in md
        assert "**Paths proposed**: One • Two" in md
        assert "**Set aside for now**: b.pdf" in md

    def test_questions_md(self):
        intake = {"paths": [], "clarifying_questions": [{"question": "Deadline?"}, {"question": ""}]}

        md = format_intake_questions_md(intake, "**Goal**: x")

        assert "**My current read**" in md
        assert "1) Deadline?" in md
        assert "reply `confirm`" in md
        assert "goal with these materials" in format_intake_questions_md(None, "")

    def test_ack_and_workflow(self):
        assert format_ack_md("  ") == ACK_TEXT
        assert format_ack_md("**Goal**: x").endswith("**Locked in**\n**Goal**: x")
        workflow = build_workflow_v1("confirm_paths", blocking=True)
        assert workflow["step"] == "confirm_paths"
        assert [a["token"] for a in workflow["actions"]] == ["confirm", "adjust"]

    def test_thread_readers(self):
        messages = [
            msg(1, "user", "I have an exam"),
            msg(2, "assistant", "old question", KIND_QUESTIONS),
            msg(3, "assistant", "newer question", KIND_QUESTIONS),
            msg(4, "user", "combine them"),
            msg(5, "user", "please"),
        ]

        question = latest_questions_message(messages)

        assert question.seq == 3
        assert user_answer_after(messages, 3) == "combine them\n\nplease"
        assert user_context_before(messages, 3) == "I have an exam"
        assert assistant_context_since(messages, 3) == "newer question"
        assert latest_questions_message([msg(1, "user", "hi")]) is None


class TestAppendIntakeMessage:
    @pytest.mark.asyncio
    async def test_idempotent_per_job(self, store, notifier, user_id, set_id):
        thread_id, job_id, path_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        store.repos.chat.add_thread(thread_id, user_id)
        kw = dict(
            kind=KIND_ACK,
            owner_user_id=user_id,
            thread_id=thread_id,
            job_id=job_id,
            material_set_id=set_id,
            path_id=path_id,
        )

        first, created = await append_intake_message(store, notifier, content="hello", **kw)
        again, created_again = await append_intake_message(store, notifier, content="hello", **kw)

        assert created is True and created_again is False
        assert again is first
        assert first.seq == 1
        assert first.meta["job_id"] == str(job_id)
        assert store.repos.chat.threads[thread_id].next_seq == 1
        assert len(notifier.created) == 1

    @pytest.mark.asyncio
    async def test_foreign_thread(self, store, notifier, user_id, set_id):
        thread_id = uuid.uuid4()
        store.repos.chat.add_thread(thread_id, uuid.uuid4())

        message, created = await append_intake_message(
            store,
            notifier,
            kind=KIND_ACK,
            owner_user_id=user_id,
            thread_id=thread_id,
            job_id=uuid.uuid4(),
            material_set_id=set_id,
            path_id=uuid.uuid4(),
            content="hello",
        )

        assert message is None and created is False
        assert notifier.created == []


def test_intake_excerpts_per_file(set_id):
    f = make_file(set_id, "a.pdf")
    chunks = {f.id: [make_chunk(f, i, f"chunk {i}") for i in range(10)]}

    text = build_intake_excerpts([f], chunks, per_file=2, max_chars=100, max_total=10000)

    assert text.startswith(f"FILE: a.pdf [file_id={f.id}]")
    assert text.count("- [chunk_id=") == 2
    assert build_intake_excerpts([f], chunks, per_file=0, max_chars=100, max_total=100) == ""


# ========================================
# CONVERSATION
# ========================================


def intake_reply(paths, files, needs_clarification=False):
    return {
        "file_intents": [
            {
                "file_id": str(f.id),
                "original_name": f.original_name,
                "aim": "Learn networking",
                "topics": ["networking"],
                "confidence": 0.9,
                "alignment": "core",
                "include_in_primary_path": True,
            }
            for f in files
        ],
        "material_alignment": {"mode": "multi_goal" if len(paths) > 1 else "single_goal", "primary_goal": "Networking"},
        "paths": paths,
        "primary_path_id": paths[0]["path_id"],
        "combined_goal": "Networking",
        "needs_clarification": needs_clarification,
        "clarifying_questions": [],
    }


class TestRunPathIntake:
    @pytest.fixture
    def ctx(self, store, user_id, set_id):
        """Two files with identical summary embeddings, a path row and a chat thread."""
        mats = store.repos.materials
        a, b = make_file(set_id, "a.pdf"), make_file(set_id, "b.pdf")
        mats.files.extend([a, b])
        for f in (a, b):
            mats.chunks[f.id] = [make_chunk(f, 0, f"Body of {f.original_name}", page=1)]
            mats.signatures[f.id] = SimpleNamespace(summary_embedding=[1.0, 0.0, 0.0])
        path_id, thread_id, job_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        store.repos.paths.add(path_id)
        store.repos.chat.add_thread(thread_id, user_id)
        split = [
            {"path_id": "p1", "title": "Transport", "goal": "Learn TCP", "core_file_ids": [str(a.id)], "confidence": 0.9, "notes": ""},
            {"path_id": "p2", "title": "Routing", "goal": "Learn OSPF", "core_file_ids": [str(b.id)], "confidence": 0.9, "notes": ""},
        ]
        merged = [
            {
                "path_id": "p1",
                "title": "Networking",
                "goal": "Learn TCP and OSPF",
                "core_file_ids": [str(a.id), str(b.id)],
                "confidence": 0.9,
                "notes": "",
            }
        ]
        return SimpleNamespace(
            files=[a, b],
            path_id=path_id,
            thread_id=thread_id,
            job_id=job_id,
            split=intake_reply(split, [a, b]),
            merged=intake_reply(merged, [a, b]),
        )

    def inp(self, user_id, set_id, ctx, wait=True, thread=True):
        return StageInput(
            user_id,
            set_id,
            path_id=ctx.path_id,
            thread_id=ctx.thread_id if thread else None,
            job_id=ctx.job_id,
            wait_for_user=wait,
        )

    @pytest.mark.asyncio
    async def test_requires_path(self, store, user_id, set_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(), settings=settings)

        with pytest.raises(ConfigurationError):
            await run_path_intake(deps, StageInput(user_id, set_id))

    @pytest.mark.asyncio
    async def test_confirm_then_merge(self, store, notifier, ctx, user_id, set_id, settings):
        """A soft split asks the user; the answer regenerates a single confirmed path."""
        chat = store.repos.chat
        llm = ScriptedLLM(ctx.split)
        deps = BuildDeps(store=store, llm=llm, notifier=notifier, settings=settings)

        first = await run_path_intake(deps, self.inp(user_id, set_id, ctx))

        assert first.status == "waiting_user"
        assert first.meta["reason"] == "awaiting_path_confirmation"
        assert first.meta["structure_check"]["soft_split"] is True
        assert first.meta["structure_check"]["max_cosine"] == pytest.approx(1.0)
        (question,) = chat.of_kind(KIND_QUESTIONS)
        assert question.meta["workflow_v1"]["blocking"] is True
        assert "Should these materials stay as separate paths" in question.content
        path_meta = store.repos.paths.paths[ctx.path_id].meta
        assert path_meta["intake_paths_confirmed"] is False
        assert path_meta["intake_job_id"] == str(ctx.job_id)

        chat.add_user_message(ctx.thread_id, user_id, "combine them")
        llm.replies.append(ctx.merged)

        second = await run_path_intake(deps, self.inp(user_id, set_id, ctx))

        assert second.status == "succeeded"
        (path,) = second.intake["paths"]
        assert sorted(path["core_file_ids"]) == sorted(ids(*ctx.files))
        assert second.intake["material_alignment"]["mode"] == "single_goal"
        assert second.intake["paths_confirmed"] is True
        assert "USER_ANSWERS:\ncombine them" in llm.prompts[1]
        assert "EXISTING_PATHS_JSON" in llm.prompts[1]
        path_meta = store.repos.paths.paths[ctx.path_id].meta
        assert path_meta["intake_paths_confirmed"] is True
        assert path_meta["intake_confirmed_by_user"] is True
        assert len(chat.of_kind(KIND_ACK)) == 1
        assert len(notifier.created) == 2

    @pytest.mark.asyncio
    async def test_waiting_without_answer(self, store, ctx, user_id, set_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(ctx.split), settings=settings)
        await run_path_intake(deps, self.inp(user_id, set_id, ctx))

        out = await run_path_intake(deps, self.inp(user_id, set_id, ctx))

        assert out.status == "waiting_user"
        assert out.meta["reason"] == "awaiting_user_answer"
        assert len(store.repos.chat.of_kind(KIND_QUESTIONS)) == 1

    @pytest.mark.asyncio
    async def test_unanswered_without_waiting_falls_back(self, store, ctx, user_id, set_id, settings):
        llm = ScriptedLLM(ctx.split)
        deps = BuildDeps(store=store, llm=llm, settings=settings)
        await run_path_intake(deps, self.inp(user_id, set_id, ctx))

        out = await run_path_intake(deps, self.inp(user_id, set_id, ctx, wait=False))

        assert out.status == "succeeded"
        assert out.intake["notes"].startswith("Fallback intake")
        assert out.intake["paths_confirmed"] is True
        assert len(llm.calls) == 1

    @pytest.mark.asyncio
    async def test_no_thread_uses_fallback(self, store, ctx, user_id, set_id, settings):
        llm = ScriptedLLM()
        deps = BuildDeps(store=store, llm=llm, settings=settings)

        out = await run_path_intake(deps, self.inp(user_id, set_id, ctx, thread=False))

        assert out.status == "succeeded"
        assert llm.calls == []
        meta = store.repos.paths.paths[ctx.path_id].meta
        assert meta["intake_paths_confirmed"] is True
        assert meta["intake_material_filter"]["include_file_ids"] == ids(*ctx.files)
        assert store.repos.chat.messages == []

    @pytest.mark.asyncio
    async def test_locked_intake_is_returned(self, store, ctx, user_id, set_id, settings):
        stored = {"paths": [{"path_id": "p1"}], "paths_confirmed": True}
        store.repos.paths.paths[ctx.path_id].meta.update(intake_locked=True, intake=stored)
        llm = ScriptedLLM()

        out = await run_path_intake(BuildDeps(store=store, llm=llm, settings=settings), self.inp(user_id, set_id, ctx))

        assert out.intake == stored
        assert out.meta == {"reason": "intake_locked"}
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_non_waiting_pass_posts_review_and_ack(self, store, ctx, user_id, set_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(ctx.split), settings=settings)

        out = await run_path_intake(deps, self.inp(user_id, set_id, ctx, wait=False))

        assert out.status == "succeeded"
        assert out.intake["needs_clarification"] is True
        assert len(out.intake["paths"]) == 2
        chat = store.repos.chat
        (review,) = chat.of_kind(KIND_REVIEW)
        assert review.meta["workflow_v1"]["blocking"] is False
        assert len(chat.of_kind(KIND_ACK)) == 1

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back(self, store, ctx, user_id, set_id, settings):
        deps = BuildDeps(store=store, llm=ScriptedLLM(RuntimeError("timeout")), settings=settings)

        out = await run_path_intake(deps, self.inp(user_id, set_id, ctx, wait=False))

        assert out.status == "succeeded"
        assert out.intake["uncertainty_reasons"] == ["fallback_intake"]
        assert len(out.intake["paths"]) == 1

    @pytest.mark.asyncio
    async def test_user_prefs_reach_the_prompt(self, store, ctx, user_id, set_id, settings):
        store.repos.paths.prefs[user_id] = {"pace": "fast", "format": "hands-on labs"}
        llm = ScriptedLLM(ctx.merged)
        deps = BuildDeps(store=store, llm=llm, settings=settings)

        await run_path_intake(deps, self.inp(user_id, set_id, ctx, wait=False))

        prompt = llm.prompts[0]
        assert 'USER_PREFS_JSON:\n{"pace": "fast", "format": "hands-on labs"}' in prompt

    @pytest.mark.asyncio
    async def test_missing_prefs_render_as_empty_object(self, store, ctx, user_id, set_id, settings):
        llm = ScriptedLLM(ctx.merged)
        deps = BuildDeps(store=store, llm=llm, settings=settings)

        await run_path_intake(deps, self.inp(user_id, set_id, ctx, wait=False))

        assert "USER_PREFS_JSON:\n{}\n" in llm.prompts[0]
