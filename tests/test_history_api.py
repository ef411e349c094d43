"""Tests for chat_history/history_api.py.

Every test works on an in-memory :class:`ChatHistoryApi`; nothing touches
the disk.
"""

import unittest

from chat_history.history_api import ChatHistoryApi
from chat_history.models import (
    ChatConfig,
    ChatFolder,
    ChatThread,
    Message,
)
from chat_history.settings import Settings


def _assert_paths_consistent(tc: unittest.TestCase, folder: ChatFolder) -> None:
    for i, child in enumerate(folder.children):
        tc.assertEqual(child.path, [*folder.path, i])
        if isinstance(child, ChatFolder):
            _assert_paths_consistent(tc, child)


def _all_ids(folder: ChatFolder) -> list[str]:
    ids = []
    for child in folder.children:
        ids.append(child.id)
        if isinstance(child, ChatFolder):
            ids.extend(_all_ids(child))
    return ids


def _api(*children, active=None, settings=None) -> ChatHistoryApi:
    root = ChatFolder(children=list(children))
    return ChatHistoryApi(root, active or [], settings=settings)


# -----------------------------------------------------------------------
# Initialization
# -----------------------------------------------------------------------

class TestInitialization(unittest.TestCase):

    def test_ensure_initialized_creates_selected_thread(self) -> None:
        api = ChatHistoryApi()
        self.assertTrue(api.fully_initialized())
        self.assertTrue(api.is_chat_history_empty())
        api.ensure_initialized()
        history = api.history
        self.assertEqual(len(history.children), 1)
        self.assertEqual(history.children[0].title, "New Chat 1")
        self.assertEqual(api.active_chat_path, [0])

    def test_ensure_initialized_keeps_existing_tree(self) -> None:
        api = _api(ChatThread(title="A"), ChatThread(title="B"), active=[1])
        api.ensure_initialized()
        self.assertEqual(len(api.history.children), 2)
        self.assertEqual(api.active_chat_path, [1])

    def test_set_chat_history_falls_back_to_first_thread(self) -> None:
        api = ChatHistoryApi()
        root = ChatFolder(children=[
            ChatFolder(children=[ChatThread(id="x")]),
        ])
        api.set_chat_history(root, [7, 3])
        self.assertEqual(api.active_chat_path, [0, 0])

    def test_set_chat_history_without_threads_clears_selection(self) -> None:
        api = ChatHistoryApi()
        api.set_chat_history(ChatFolder(children=[ChatFolder()]), [0, 0])
        self.assertEqual(api.active_chat_path, [])

    def test_set_chat_history_renumbers_whole_tree(self) -> None:
        api = ChatHistoryApi()
        thread = ChatThread(path=[9, 9])
        api.set_chat_history(ChatFolder(children=[ChatFolder(), thread]), [])
        _assert_paths_consistent(self, api.history)

    def test_set_chat_history_replaces_duplicate_ids(self) -> None:
        api = ChatHistoryApi()
        root = ChatFolder(children=[
            ChatThread(id="t", title="first"),
            ChatFolder(id="f", children=[ChatThread(id="t", title="nested")]),
        ])
        api.set_chat_history(root, [0])
        ids = _all_ids(api.history)
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(api.history.children[0].id, "t")
        self.assertEqual(api.get_chat_item([0]).title, "first")

    def test_accessors_return_copies(self) -> None:
        api = _api(ChatThread(title="A"), active=[0])
        api.history.children[0].title = "mutated"
        self.assertEqual(api.get_chat_thread_title([0]), "A")

    def test_set_active_chat_path(self) -> None:
        api = _api(ChatThread(), ChatThread(), active=[0])
        self.assertTrue(api.set_active_chat_path([1]))
        self.assertFalse(api.set_active_chat_path([2]))
        self.assertEqual(api.active_chat_path, [1])
        self.assertTrue(api.set_active_chat_path([]))
        self.assertTrue(api.no_active_chat_thread())


# -----------------------------------------------------------------------
# Insertion
# -----------------------------------------------------------------------

class TestInsert(unittest.TestCase):

    def test_three_default_threads_are_numbered(self) -> None:
        api = ChatHistoryApi()
        folder_path = api.append_chat_folder([], "Work")
        for _ in range(3):
            api.append_and_activate_new_chat_thread(folder_path)
        folder = api.get_chat_item(folder_path)
        self.assertEqual([t.title for t in folder.children],
                         ["New Chat 1", "New Chat 2", "New Chat 3"])
        self.assertEqual(api.active_chat_path, [0, 2])

    def test_resolve_after_insert_returns_inserted(self) -> None:
        api = _api(ChatThread(title="A"), ChatThread(title="B"))
        path = api.insert_chat_thread([], 1)
        self.assertEqual(path, [1])
        self.assertEqual(api.get_chat_item(path).title, "New Chat 1")
        self.assertEqual(api.get_chat_thread_title([2]), "B")

    def test_new_thread_inherits_parent_config(self) -> None:
        settings = Settings(default_chat_config=ChatConfig(model="gpt-4"))
        api = ChatHistoryApi(settings=settings)
        path = api.append_and_activate_new_chat_thread([])
        self.assertEqual(api.get_chat_item(path).config.model, "gpt-4")

    def test_default_system_message_is_seeded(self) -> None:
        settings = Settings(default_system_message="Be brief.")
        api = ChatHistoryApi(settings=settings)
        api.ensure_initialized()
        self.assertEqual(api.active_chat_thread().messages,
                         [Message("system", "Be brief.")])

    def test_insert_into_thread_is_noop(self) -> None:
        api = _api(ChatThread(title="A"))
        before = api.history
        self.assertIsNone(api.insert_chat_thread([0], 0))
        self.assertEqual(api.history, before)

    def test_prepend_shifts_active_in_same_folder(self) -> None:
        api = _api(ChatThread(id="a"), active=[0])
        api.prepend_new_chat_thread([])
        self.assertEqual(api.active_chat_path, [1])
        self.assertEqual(api.active_chat_thread().id, "a")

    def test_prepend_elsewhere_keeps_active(self) -> None:
        api = _api(ChatThread(id="a"), ChatFolder(id="f"), active=[0])
        api.prepend_new_chat_thread([1])
        self.assertEqual(api.active_chat_path, [0])
        self.assertEqual(api.get_chat_thread_title([1, 0]), "New Chat 1")

    def test_insert_folder(self) -> None:
        api = _api(ChatThread(id="a"), active=[0])
        path = api.insert_chat_folder([], 0)
        folder = api.get_chat_item(path)
        self.assertEqual(path, [0])
        self.assertEqual(folder.title, "New Folder 1")
        self.assertTrue(folder.expanded)
        self.assertEqual(api.active_chat_path, [1])

    def test_bulk_append_replaces_colliding_ids(self) -> None:
        api = _api(ChatThread(id="a"), active=[0])
        api.bulk_append_chat_threads([ChatThread(id="a"), ChatThread(id="b")])
        history = api.history
        self.assertEqual(len(history.children), 3)
        self.assertEqual(len(set(_all_ids(history))), 3)
        self.assertEqual(history.children[2].id, "b")
        _assert_paths_consistent(self, history)

    def test_reset_to_single_default_thread(self) -> None:
        api = _api(ChatThread(), ChatFolder(children=[ChatThread()]))
        path = api.reset_chat_history_to_single_default_chat_thread()
        self.assertEqual(path, [0])
        self.assertEqual(len(api.history.children), 1)
        self.assertEqual(api.active_chat_path, [0])


# -----------------------------------------------------------------------
# Deletion
# -----------------------------------------------------------------------

class TestDelete(unittest.TestCase):

    def test_deletion_renumbers_siblings(self) -> None:
        folder = ChatFolder(children=[
            ChatThread(id="t0"), ChatThread(id="t1"), ChatThread(id="t2"),
        ])
        api = _api(folder)
        self.assertTrue(api.delete_chat_thread([0, 0]))
        children = api.get_chat_item([0]).children
        self.assertEqual([c.id for c in children], ["t1", "t2"])
        self.assertEqual([c.path for c in children], [[0, 0], [0, 1]])

    def test_deleting_earlier_sibling_keeps_active_item(self) -> None:
        api = _api(ChatThread(id="a"), ChatThread(id="b"),
                   ChatThread(id="c"), active=[2])
        api.delete_chat_thread([0])
        self.assertEqual(api.active_chat_path, [1])
        self.assertEqual(api.active_chat_thread().id, "c")

    def test_deleting_sole_active_child_reselects_elsewhere(self) -> None:
        api = _api(ChatThread(id="a"),
                   ChatFolder(id="f", children=[ChatThread(id="b")]),
                   active=[1, 0])
        api.delete_chat_thread([1, 0])
        self.assertEqual(api.get_chat_item([1]).children, [])
        self.assertEqual(api.active_chat_path, [0])
        self.assertEqual(api.active_chat_thread().id, "a")

    def test_deleting_active_prefers_parent_thread(self) -> None:
        api = _api(ChatThread(id="a"),
                   ChatFolder(children=[ChatThread(id="b"),
                                        ChatThread(id="c")]),
                   active=[1, 0])
        api.delete_chat_thread([1, 0])
        self.assertEqual(api.active_chat_thread().id, "c")

    def test_deleting_last_thread_inserts_default(self) -> None:
        api = ChatHistoryApi()
        api.ensure_initialized()
        old_id = api.active_chat_thread().id
        api.delete_chat_thread([0])
        history = api.history
        self.assertEqual(len(history.children), 1)
        self.assertNotEqual(history.children[0].id, old_id)
        self.assertEqual(api.active_chat_path, [0])

    def test_deleting_last_thread_inside_folder(self) -> None:
        api = _api(ChatFolder(id="f", children=[ChatThread(id="x")]),
                   active=[0, 0])
        api.delete_chat_thread([0, 0])
        self.assertFalse(api.is_chat_history_empty())
        thread = api.active_chat_thread()
        self.assertIsNotNone(thread)
        self.assertNotEqual(thread.id, "x")

    def test_replace_if_empty(self) -> None:
        api = _api(ChatThread(id="a"),
                   ChatFolder(children=[ChatThread(id="b")]), active=[0])
        api.delete_chat_thread([1, 0], replace_if_empty=True)
        folder = api.get_chat_item([1])
        self.assertEqual(len(folder.children), 1)
        self.assertEqual(folder.children[0].title, "New Chat 1")
        self.assertEqual(api.active_chat_path, [0])

    def test_deleting_folder_rehomes_selection(self) -> None:
        api = _api(ChatThread(id="a"),
                   ChatFolder(children=[ChatThread(id="b")]),
                   active=[1, 0])
        self.assertTrue(api.delete_chat_folder([1]))
        self.assertEqual(len(api.history.children), 1)
        self.assertEqual(api.active_chat_thread().id, "a")

    def test_variant_mismatch_is_noop(self) -> None:
        api = _api(ChatThread(id="a"), ChatFolder(id="f"), active=[0])
        before = api.history
        self.assertFalse(api.delete_chat_thread([1]))
        self.assertFalse(api.delete_chat_folder([0]))
        self.assertEqual(api.history, before)

    def test_invalid_path_is_noop(self) -> None:
        api = _api(ChatThread(id="a"), active=[0])
        before = api.history
        self.assertFalse(api.delete_chat_thread([5]))
        self.assertFalse(api.delete_chat_folder([]))
        self.assertEqual(api.history, before)


# -----------------------------------------------------------------------
# Move / clone
# -----------------------------------------------------------------------

class TestMove(unittest.TestCase):

    def test_move_thread_to_folder(self) -> None:
        api = _api(ChatThread(id="a"), ChatThread(id="b"),
                   ChatFolder(id="f", children=[ChatThread(id="c")]),
                   active=[0])
        api.set_chat_folder_expanded([2], False)
        new_path = api.move_chat_thread_to_folder([0], [2], True)
        self.assertEqual(new_path, [1, 1])
        history = api.history
        self.assertEqual([c.id for c in history.children], ["b", "f"])
        self.assertTrue(history.children[1].expanded)
        self.assertEqual(api.active_chat_path, [1, 1])
        self.assertEqual(api.active_chat_thread().id, "a")
        _assert_paths_consistent(self, history)

    def test_move_without_expand_keeps_flag(self) -> None:
        api = _api(ChatThread(id="a"), ChatFolder(id="f", expanded=False))
        api.move_chat_thread_to_folder([0], [1])
        self.assertFalse(api.get_chat_item([0]).expanded)

    def test_move_into_thread_is_noop(self) -> None:
        api = _api(ChatThread(id="a"), ChatThread(id="b"), active=[0])
        before = api.history
        self.assertIsNone(api.move_chat_thread_to_folder([0], [1]))
        self.assertEqual(api.history, before)

    def test_move_keeps_identifier(self) -> None:
        api = _api(ChatThread(id="a"), ChatFolder())
        new_path = api.move_chat_thread_to_folder([0], [1])
        self.assertEqual(api.get_chat_item(new_path).id, "a")

    def test_move_folder_branch(self) -> None:
        api = _api(ChatFolder(id="f1", children=[ChatThread(id="x")]),
                   ChatFolder(id="f2"), active=[0, 0])
        new_path = api.move_chat_folder([0], [1])
        self.assertEqual(new_path, [0, 0])
        self.assertEqual(api.find_chat_path_by_id("x"), [0, 0, 0])
        self.assertEqual(api.active_chat_path, [0, 0, 0])
        _assert_paths_consistent(self, api.history)

    def test_move_folder_into_itself_is_rejected(self) -> None:
        api = _api(ChatFolder(id="f1", children=[ChatFolder(id="inner")]))
        self.assertIsNone(api.move_chat_folder([0], [0]))
        self.assertIsNone(api.move_chat_folder([0], [0, 0]))
        self.assertEqual(api.find_chat_path_by_id("inner"), [0, 0])


class TestClone(unittest.TestCase):

    def test_clone_title_id_and_selection(self) -> None:
        api = _api(ChatThread(id="a", title="X"), active=[0])
        clone_path = api.clone_active_chat_thread()
        self.assertEqual(clone_path, [0])
        history = api.history
        clone, original = history.children
        self.assertEqual(clone.title, "Copy of X")
        self.assertNotEqual(clone.id, "a")
        self.assertEqual(original.id, "a")
        self.assertEqual(api.active_chat_path, [1])

    def test_second_clone_is_numbered(self) -> None:
        api = _api(ChatThread(id="a", title="X"), active=[0])
        api.clone_active_chat_thread()
        api.clone_active_chat_thread()
        titles = [c.title for c in api.history.children]
        self.assertEqual(titles, ["Copy of X 2", "Copy of X", "X"])

    def test_clone_copies_messages_deeply(self) -> None:
        thread = ChatThread(id="a", title="X",
                            messages=[Message("user", "hi")])
        api = _api(thread, active=[0])
        api.clone_active_chat_thread()
        api.set_active_chat_thread_message_content(0, "changed")
        history = api.history
        self.assertEqual(history.children[0].messages[0].content, "hi")
        self.assertEqual(history.children[1].messages[0].content, "changed")

    def test_clone_non_active_keeps_original_selected(self) -> None:
        api = _api(ChatFolder(children=[ChatThread(id="a", title="A")]),
                   ChatThread(id="b"), active=[1])
        api.clone_chat_thread([0, 0])
        self.assertEqual(api.active_chat_thread().id, "a")
        self.assertEqual(api.active_chat_path, [0, 1])

    def test_clone_folder_is_noop(self) -> None:
        api = _api(ChatFolder(), ChatThread())
        self.assertIsNone(api.clone_chat_thread([0]))


# -----------------------------------------------------------------------
# Field updates
# -----------------------------------------------------------------------

class TestFieldUpdates(unittest.TestCase):

    def setUp(self) -> None:
        self.api = _api(ChatThread(id="a", title="A"),
                        ChatFolder(id="f", title="F"), active=[0])
        self.events: list[list[int]] = []
        self.api.subscribe(lambda h, p: self.events.append(list(p)))

    def test_rename_thread(self) -> None:
        self.assertTrue(self.api.set_chat_thread_title([0], "B", True))
        thread = self.api.get_chat_item([0])
        self.assertEqual(thread.title, "B")
        self.assertTrue(thread.title_set)
        self.assertEqual(thread.id, "a")

    def test_unchanged_value_does_not_publish(self) -> None:
        self.assertFalse(self.api.set_chat_thread_title([0], "A"))
        self.assertFalse(self.api.set_chat_folder_title([1], "F"))
        self.assertEqual(self.events, [])

    def test_folder_fields(self) -> None:
        self.assertTrue(self.api.set_chat_folder_color([1], "#ff0000"))
        self.assertTrue(self.api.set_chat_folder_expanded([1], False))
        self.assertTrue(self.api.set_chat_folder_title([1], "G"))
        folder = self.api.get_chat_item([1])
        self.assertEqual((folder.color, folder.expanded, folder.title),
                         ("#ff0000", False, "G"))
        self.assertEqual(folder.id, "f")
        self.assertEqual(len(self.events), 3)

    def test_variant_mismatch(self) -> None:
        self.assertFalse(self.api.set_chat_folder_title([0], "Z"))
        self.assertFalse(self.api.set_chat_thread_title([1], "Z"))
        self.assertEqual(self.events, [])

    def test_config_for_active_thread(self) -> None:
        config = ChatConfig(model="gpt-4", temperature=0.2)
        self.assertTrue(self.api.set_config_for_active_chat_thread(config))
        self.assertEqual(self.api.active_chat_thread().config, config)


# -----------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------

class TestMessages(unittest.TestCase):

    def setUp(self) -> None:
        thread = ChatThread(messages=[
            Message("system", "S"),
            Message("user", "U"),
            Message("assistant", "A"),
        ])
        self.api = _api(thread, active=[0])

    def _contents(self) -> list[str]:
        return [m.content for m in self.api.active_chat_thread().messages]

    def test_append_and_insert(self) -> None:
        self.api.append_message_to_active_chat_thread(Message("user", "U2"))
        self.api.insert_active_chat_thread_message(Message("user", "U0"), 1)
        self.assertEqual(self._contents(), ["S", "U0", "U", "A", "U2"])

    def test_unknown_role_rejected(self) -> None:
        self.assertFalse(self.api.append_message_to_active_chat_thread(
            Message("robot", "beep")))
        self.assertFalse(self.api.set_active_chat_thread_message_role(
            "robot", 0))
        self.assertEqual(self._contents(), ["S", "U", "A"])

    def test_set_role_and_content(self) -> None:
        self.api.set_active_chat_thread_message_role("assistant", 1)
        self.api.set_active_chat_thread_message_content(1, "edited")
        msg = self.api.active_chat_thread().messages[1]
        self.assertEqual((msg.role, msg.content), ("assistant", "edited"))

    def test_move_up_and_down(self) -> None:
        self.api.move_active_chat_thread_message(2, "up")
        self.assertEqual(self._contents(), ["S", "A", "U"])
        self.api.move_active_chat_thread_message(0, "down")
        self.assertEqual(self._contents(), ["A", "S", "U"])

    def test_delete(self) -> None:
        self.api.delete_active_chat_thread_message(1)
        self.assertEqual(self._contents(), ["S", "A"])
        self.api.delete_active_chat_thread_last_message()
        self.assertEqual(self._contents(), ["S"])

    def test_delete_negative_index_is_rejected(self) -> None:
        self.assertFalse(self.api.delete_active_chat_thread_message(-1))
        self.assertEqual(self._contents(), ["S", "U", "A"])

    def test_delete_after_index(self) -> None:
        self.api.delete_active_chat_thread_messages_after_index(0)
        self.assertEqual(self._contents(), ["S"])

    def test_failed_edit_leaves_tree_untouched(self) -> None:
        before = self.api.history
        with self.assertRaises(IndexError):
            self.api.set_active_chat_thread_message_content(10, "x")
        self.assertEqual(self.api.history, before)

    def test_no_active_thread(self) -> None:
        self.api.set_active_chat_path([])
        self.assertFalse(self.api.append_message_to_active_chat_thread(
            Message("user", "x")))


# -----------------------------------------------------------------------
# Filtering
# -----------------------------------------------------------------------

class TestFilter(unittest.TestCase):

    def setUp(self) -> None:
        self.api = _api(
            ChatThread(id="a", title="Alpha"),
            ChatFolder(id="f", title="Work", children=[
                ChatThread(id="b", title="beta"),
                ChatThread(id="c", title="Gamma"),
            ]),
            active=[1, 1],
        )

    def test_no_match_gives_empty_result(self) -> None:
        self.assertEqual(
            self.api.filtered_chat_history_children_by_title("zzz", False),
            [],
        )

    def test_folder_title_alone_does_not_match(self) -> None:
        self.assertEqual(
            self.api.filtered_chat_history_children_by_title("Work", False),
            [],
        )

    def test_case_insensitive_substring(self) -> None:
        result = self.api.filtered_chat_history_children_by_title("ALP")
        self.assertEqual([i.id for i in result], ["a"])

    def test_keep_active_includes_ancestors(self) -> None:
        result = self.api.filtered_chat_history_children_by_title("zzz",
                                                                  True)
        self.assertEqual(len(result), 1)
        self.assertEqual(result[0].id, "f")
        self.assertEqual([c.id for c in result[0].children], ["c"])

    def test_published_tree_not_pruned(self) -> None:
        self.api.filtered_chat_history_children_by_title("alpha")
        self.assertEqual(len(self.api.get_chat_item([1]).children), 2)


# -----------------------------------------------------------------------
# Invariants over a sequence of operations
# -----------------------------------------------------------------------

class TestInvariants(unittest.TestCase):

    def test_paths_and_ids_after_mixed_operations(self) -> None:
        api = ChatHistoryApi()
        api.ensure_initialized()
        f1 = api.append_chat_folder([], "One")
        f2 = api.append_chat_folder(f1, "Two")
        api.append_and_activate_new_chat_thread(f2)
        api.prepend_new_chat_thread(f1)
        api.clone_active_chat_thread()
        api.move_chat_thread_to_folder([0], f1, True)
        api.insert_chat_folder([], 0, "Zero")
        api.delete_chat_thread([1, 0])
        api.move_chat_folder([1, 0], [0])

        history = api.history
        _assert_paths_consistent(self, history)
        ids = _all_ids(history)
        self.assertEqual(len(ids), len(set(ids)))
        self.assertIsNotNone(api.get_chat_item(api.active_chat_path))
        self.assertIsNotNone(api.active_chat_thread())

    def test_listener_receives_every_publish(self) -> None:
        api = ChatHistoryApi()
        events = []
        api.subscribe(lambda h, p: events.append((len(h.children), list(p))))
        api.append_and_activate_new_chat_thread([])
        api.append_and_activate_new_chat_thread([])
        self.assertEqual(events, [(1, [0]), (2, [1])])


if __name__ == "__main__":
    unittest.main()
