# tests/test_end_to_end.py
"""
Full dispatch story through raw Telegram updates:

registration → admin approval → job offered to three technicians → two
claims win, the third is refused → the second one starts and completes
with a photo.
"""
from __future__ import annotations

import itertools

import pytest

from fieldops.core.domain import JobKind, JobStatus

_update_ids = itertools.count(1)


def _message(chat_id: int, first_name: str = "Test", **fields) -> dict:
    update_id = next(_update_ids)
    message = {
        "message_id": update_id,
        "from": {"id": chat_id, "first_name": first_name},
        "chat": {"id": chat_id, "type": "private"},
    }
    message.update(fields)
    return {"update_id": update_id, "message": message}


def _press(chat_id: int, data: str) -> dict:
    update_id = next(_update_ids)
    return {
        "update_id": update_id,
        "callback_query": {
            "id": f"cbq-{update_id}",
            "from": {"id": chat_id},
            "message": {"message_id": update_id, "chat": {"id": chat_id}},
            "data": data,
        },
    }


def _buttons(gateway, chat_id: str, prefix: str) -> list[str]:
    return [
        action.data
        for cid, _, actions in gateway.sent
        if cid == chat_id and actions
        for row in actions
        for action in row
        if action.data and action.data.startswith(prefix)
    ]


class TestDispatchStory:

    @pytest.mark.asyncio
    async def test_registration_to_completion(self, service, gateway, make_admin):
        process = service.processor.process
        await make_admin("a1", "900")

        # -- three technicians register and are approved from the admin chat
        crew = ((201, "Andi", "081234500001"), (202, "Bayu", "081234500002"), (203, "Citra", "081234500003"))
        for chat_id, name, phone in crew:
            await process(_message(chat_id, name, text=f"/register {phone}"))

        approvals = _buttons(gateway, "900", "approve_reg_")
        assert len(approvals) == 3
        for data in approvals:
            await process(_press(900, data))

        andi = await service.technicians.find_by_chat("201")
        bayu = await service.technicians.find_by_chat("202")
        citra = await service.technicians.find_by_chat("203")
        assert (andi.name, bayu.name, citra.name) == ("Andi", "Bayu", "Citra")
        assert any("Welcome aboard" in t for t in gateway.texts_for("203"))

        # -- a job is created and offered to all three
        job, result = await service.lifecycle.create_job(
            JobKind.REPAIR, "Jl. Asia Afrika 8, Bandung", sub_category="cable fault",
        )
        assert result.succeeded == 3
        take = f"take_job_{job.id}"
        for chat_id in ("201", "202", "203"):
            assert _buttons(gateway, chat_id, "take_job_") == [take]

        # -- A and B claim; A learns the crew is full
        first = await process(_press(201, take))
        assert f"#{job.number} (1/2)" in first.text
        second = await process(_press(202, take))
        assert "(2/2)" in second.text
        assert any("now has its full crew" in t for t in gateway.texts_for("201"))

        # -- C is too late and is told the crew is full
        late = await process(_press(203, take))
        assert late.text.startswith("⚠️")
        assert f"Job {job.number} already has 2 technicians" in late.text
        crew_ids = {a.technician_id for a in await service.jobs.list_assignments(job.id)}
        assert crew_ids == {andi.id, bayu.id}

        # -- B starts, asks to complete, sends the photo
        started = await process(_press(202, f"start_job_{job.id}"))
        assert "in progress" in started.text
        asked = await process(_press(202, f"complete_job_{job.id}"))
        assert "Send a photo" in asked.text

        done = await process(_message(
            202, "Bayu",
            photo=[{"file_id": "photo-small", "file_size": 100}, {"file_id": "photo-big", "file_size": 9000}],
        ))
        assert "is completed" in done.text
        assert any("is completed" in t for t in gateway.texts_for("201"))

        stored = await service.jobs.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.completion_evidence == "photo-big"
        assignments = await service.jobs.list_assignments(job.id)
        assert len(assignments) == 2
        assert all(a.completed_at is not None for a in assignments)

        # every button press was acknowledged
        assert len(gateway.answered) == 3 + 2 + 1 + 2
        assert await service.sessions.get("202") is None

    @pytest.mark.asyncio
    async def test_completion_blocked_until_second_technician(self, service, gateway, make_technician, make_job):
        process = service.processor.process
        await make_technician("t1", "301")
        job = await make_job()

        await process(_press(301, f"take_job_{job.id}"))
        reply = await process(_press(301, f"complete_job_{job.id}"))

        assert "second technician" in reply.text
        assert (await service.jobs.get_job(job.id)).status == JobStatus.ASSIGNED
