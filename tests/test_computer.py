import asyncio
import time
import unittest

from salvo.schemas import (
    BOARD_SIZE,
    FLEET_SIZES,
    ActionRequest,
    Coord,
    DonePlacementAction,
    FireAction,
    JoinRequest,
    PlaceAction,
    ResetAction,
)
from salvo.services.computer import ComputerPlayer
from salvo.services.persistence import MemoryRepository
from salvo.services.room import RoomStore


class TestComputerPlayer(unittest.TestCase):
    def setUp(self):
        self.store = RoomStore(MemoryRepository())
        self.code = self.store.create_room().room_code
        self.human = self.store.join(self.code, JoinRequest(display_name="Human")).session_token

    def act(self, action):
        return self.store.apply(self.code, ActionRequest(session_token=self.human, action=action))

    def human_ready(self):
        for row, size in enumerate(FLEET_SIZES):
            self.assertTrue(self.act(PlaceAction(player=1, start=Coord(r=row, c=0), size=size)).accepted)
        self.assertTrue(self.act(DonePlacementAction(player=1)).accepted)

    def test_join_takes_free_slot(self):
        cpu = ComputerPlayer(self.store, self.code, difficulty="hard", seed=1)
        res = cpu.join()
        self.assertEqual(res.player, 2)
        self.assertEqual(res.state.names[2], "Computer (hard)")

    def test_places_fleet_and_readies(self):
        cpu = ComputerPlayer(self.store, self.code, seed=2)
        cpu.join()
        responses = cpu.on_state()
        self.assertTrue(all(r.accepted for r in responses))
        state = self.store.state(self.code)
        self.assertTrue(state.p2_ready)
        self.assertEqual([s.size for s in state.p2.fleet], list(FLEET_SIZES))
        # nothing more to do until the human is ready
        self.assertEqual(cpu.on_state(), [])

    def test_plays_a_full_game(self):
        for difficulty in ("easy", "medium", "hard"):
            with self.subTest(difficulty=difficulty):
                self.setUp()
                cpu = ComputerPlayer(self.store, self.code, difficulty=difficulty, seed=11)
                cpu.join()
                cpu.on_state()
                self.human_ready()
                cells = [Coord(r=r, c=c) for r in range(BOARD_SIZE) for c in range(BOARD_SIZE)]
                for target in cells:
                    res = self.act(FireAction(player=1, target=target))
                    self.assertTrue(res.accepted, res.reason)
                    if res.state.phase == "GAME_OVER":
                        break
                    (reply,) = cpu.on_state()
                    self.assertTrue(reply.accepted, reply.reason)
                    if reply.state.phase == "GAME_OVER":
                        break
                state = self.store.state(self.code)
                self.assertEqual(state.phase, "GAME_OVER")
                self.assertIn(state.winner, (1, 2))
                self.assertEqual(cpu.on_state(), [])

    def test_replaces_fleet_after_reset(self):
        cpu = ComputerPlayer(self.store, self.code, seed=4)
        cpu.join()
        cpu.on_state()
        self.human_ready()
        self.assertTrue(self.act(ResetAction(player=1)).accepted)
        cpu.on_state()
        state = self.store.state(self.code)
        self.assertEqual(state.phase, "BOTH_PLACE")
        self.assertTrue(state.p2_ready)
        self.assertFalse(state.p1_ready)

    def test_run_loop_reacts_and_stops(self):
        cpu = ComputerPlayer(self.store, self.code, seed=5)

        async def scenario():
            task = asyncio.create_task(cpu.run())
            for _ in range(200):
                await asyncio.sleep(0.01)
                if self.store.state(self.code).p2_ready:
                    break
            cpu.stop()
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(scenario())
        self.assertTrue(self.store.state(self.code).p2_ready)
        self.assertEqual(self.store._rooms[self.code].subscribers, [])

    def test_run_loop_ends_when_room_is_reaped(self):
        cpu = ComputerPlayer(self.store, self.code, seed=6)

        async def scenario():
            task = asyncio.create_task(cpu.run())
            for _ in range(200):
                await asyncio.sleep(0.01)
                if self.store.state(self.code).p2_ready:
                    break
            self.assertEqual(self.store.reap(now=time.time() + 10 ** 6), [self.code])
            await asyncio.wait_for(task, timeout=2)

        asyncio.run(scenario())
        self.assertNotIn(self.code, self.store._rooms)
