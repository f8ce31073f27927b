"""HTTP surface of the support chat, run against the in-memory service."""

from bson import ObjectId
from pymongo.errors import AutoReconnect

from support_chat.models.user import Role
from support_chat.schemas.user import CurrentUser
from support_chat.utils.security import create_access_token


class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get("/conversations/support")

        assert response.status_code == 401
        assert response.json() == {
            "error": {"code": "NOT_AUTHENTICATED", "message": "Authentication required", "details": {}},
        }

    def test_garbage_token(self, client):
        response = client.get("/conversations/support", headers={"Authorization": "Bearer not.a.jwt"})

        assert response.status_code == 401

    def test_unknown_role_in_token(self, client, user_id):
        token = create_access_token(user_id, "moderator")

        response = client.get("/conversations/support", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401


class TestSupportConversation:

    def test_user_gets_conversation_in_camel_case(self, client, user, headers_for):
        response = client.get("/conversations/support", headers=headers_for(user))

        assert response.status_code == 200
        body = response.json()
        assert body["messages"] == []
        assert body["unreadCount"] == {"user": 0, "admin": 0}
        assert body["isActive"] is True
        assert body["lastMessage"] is None
        assert {p["role"] for p in body["participants"]} == {"user", "admin"}

    def test_admin_is_forbidden(self, client, admin, headers_for):
        response = client.get("/conversations/support", headers=headers_for(admin))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"


class TestMessaging:

    def test_send_then_admin_reads(self, client, user, admin, headers_for):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()

        sent = client.post(
            f"/conversations/{convo['id']}/messages",
            json={"content": "Hello", "clientMessageId": "tmp-1"},
            headers=headers_for(user),
        )

        assert sent.status_code == 201
        message = sent.json()
        assert message["content"] == "Hello"
        assert message["senderRole"] == "user"
        assert message["isRead"] is False
        assert message["clientMessageId"] == "tmp-1"

        unread = client.get("/conversations/unread-count", headers=headers_for(admin))
        assert unread.json() == {"unreadCount": 1}

        marked = client.put(f"/conversations/{convo['id']}/read", headers=headers_for(admin))
        assert marked.json() == {"updated": 1}

        again = client.put(f"/conversations/{convo['id']}/read", headers=headers_for(admin))
        assert again.json() == {"updated": 0}

        unread = client.get("/conversations/unread-count", headers=headers_for(admin))
        assert unread.json() == {"unreadCount": 0}

    def test_viewing_acknowledges(self, client, user, admin, headers_for):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()
        client.post(f"/conversations/{convo['id']}/messages", json={"content": "Hi there"}, headers=headers_for(admin))

        assert client.get("/conversations/unread-count", headers=headers_for(user)).json() == {"unreadCount": 1}

        body = client.get(f"/conversations/{convo['id']}", headers=headers_for(user)).json()

        assert body["unreadCount"]["user"] == 0
        assert body["messages"][0]["isRead"] is True
        assert body["messages"][0]["readAt"] is not None

    def test_empty_content_is_rejected(self, client, user, headers_for):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()

        response = client.post(f"/conversations/{convo['id']}/messages", json={"content": "   "}, headers=headers_for(user))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "content" in error["details"]

    def test_missing_body_field_uses_same_error_shape(self, client, user, headers_for):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()

        response = client.post(f"/conversations/{convo['id']}/messages", json={}, headers=headers_for(user))

        assert response.status_code == 400
        assert set(response.json()) == {"error"}
        assert "content" in response.json()["error"]["details"]

    def test_stranger_cannot_read_or_write(self, client, user, stranger, headers_for):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()

        assert client.get(f"/conversations/{convo['id']}", headers=headers_for(stranger)).status_code == 403
        assert client.put(f"/conversations/{convo['id']}/read", headers=headers_for(stranger)).status_code == 403
        posted = client.post(f"/conversations/{convo['id']}/messages", json={"content": "hey"}, headers=headers_for(stranger))
        assert posted.status_code == 403

    def test_unknown_conversation(self, client, admin, headers_for):
        response = client.get(f"/conversations/{ObjectId()}", headers=headers_for(admin))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_store_outage_is_503(self, client, user, headers_for, conversations_repo):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()
        conversations_repo.fail_next = AutoReconnect("primary stepped down")

        response = client.post(f"/conversations/{convo['id']}/messages", json={"content": "Hello"}, headers=headers_for(user))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"


class TestAdminRoutes:

    def test_listing(self, client, user, stranger, admin, headers_for):
        mine = client.get("/conversations/support", headers=headers_for(user)).json()
        client.get("/conversations/support", headers=headers_for(stranger))
        client.post(f"/conversations/{mine['id']}/messages", json={"content": "latest"}, headers=headers_for(user))

        response = client.get("/conversations", params={"page": 1, "limit": 1}, headers=headers_for(admin))

        assert response.status_code == 200
        body = response.json()
        assert [c["id"] for c in body["items"]] == [mine["id"]]
        assert body["items"][0]["messages"] is None
        assert body["pagination"] == {
            "currentPage": 1,
            "totalPages": 2,
            "totalItems": 2,
            "hasNext": True,
            "hasPrev": False,
        }

    def test_listing_is_admin_only(self, client, user, headers_for):
        assert client.get("/conversations", headers=headers_for(user)).status_code == 403

    def test_limit_above_cap(self, client, admin, headers_for):
        response = client.get("/conversations", params={"limit": 500}, headers=headers_for(admin))

        assert response.status_code == 400
        assert "limit" in response.json()["error"]["details"]

    def test_delete_hides_from_listing(self, client, user, admin, headers_for):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()

        deleted = client.delete(f"/conversations/{convo['id']}", headers=headers_for(admin))

        assert deleted.status_code == 204
        assert client.get("/conversations", headers=headers_for(admin)).json()["items"] == []
        assert client.get(f"/conversations/{convo['id']}", headers=headers_for(admin)).json()["isActive"] is False

    def test_user_cannot_delete(self, client, user, headers_for):
        convo = client.get("/conversations/support", headers=headers_for(user)).json()

        assert client.delete(f"/conversations/{convo['id']}", headers=headers_for(user)).status_code == 403


class TestPresence:

    def test_offline_without_channel(self, client, user, admin, headers_for):
        response = client.get(f"/presence/{user.id}", headers=headers_for(admin))

        assert response.json() == {"user_id": user.id, "online": False}

    def test_online_list_is_admin_only(self, client, user, headers_for):
        assert client.get("/presence", headers=headers_for(user)).status_code == 403

    def test_connected_socket_shows_online(self, client, user, admin, headers_for, ws_url_for):
        with client.websocket_connect(ws_url_for(user)) as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()

            listing = client.get("/presence", headers=headers_for(admin)).json()
            single = client.get(f"/presence/{user.id}", headers=headers_for(admin)).json()

        assert listing == {"online": [user.id]}
        assert single["online"] is True


def test_other_admin_may_act_on_any_conversation(client, user, headers_for):
    other_admin = CurrentUser(id=str(ObjectId()), role=Role.ADMIN)
    convo = client.get("/conversations/support", headers=headers_for(user)).json()

    response = client.post(f"/conversations/{convo['id']}/messages", json={"content": "Covering for a colleague"}, headers=headers_for(other_admin))

    assert response.status_code == 201
    assert response.json()["senderRole"] == "admin"
