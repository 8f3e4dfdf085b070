"""Tests for the visitors API handler."""

import json

import pytest


def _create(handler, api_gateway_event, **overrides):
    body = {
        "name": "Maria Santos",
        "email": "maria@example.com",
        "phone": "(11) 99999-9999",
        "first_visit_date": "2024-01-15T10:00:00Z",
    }
    body.update(overrides)
    response = handler(api_gateway_event(method="POST", resource="/visitors", body=body), None)
    assert response["statusCode"] == 201
    return json.loads(response["body"])["id"]


def _visitor_event(api_gateway_event, visitor_id, method="GET", suffix="", **kwargs):
    return api_gateway_event(
        method=method,
        resource="/visitors/{visitor_id}" + suffix,
        path_params={"visitor_id": visitor_id},
        **kwargs,
    )


class TestCreateVisitor:
    """Tests for POST /visitors."""

    def test_create_visitor(self, dynamodb_table, api_gateway_event):
        """The current user is recorded as creator."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)

        response = handler(_visitor_event(api_gateway_event, visitor_id), None)
        body = json.loads(response["body"])
        assert response["statusCode"] == 200
        assert body["name"] == "Maria Santos"
        assert body["created_by"] == "test-user-123"
        assert body["total_visits"] == 1
        assert body["insights"]["needs_follow_up"] is True

    def test_create_visitor_invalid(self, dynamodb_table, api_gateway_event):
        """Invalid fields are reported per field."""
        from api.visitors import handler

        event = api_gateway_event(
            method="POST",
            resource="/visitors",
            body={"name": "Maria", "email": "nope", "first_visit_date": "2024-01-15T10:00:00Z"},
        )
        response = handler(event, None)

        assert response["statusCode"] == 400
        body = json.loads(response["body"])
        assert body["error_code"] == "VALIDATION_ERROR"
        assert [e["field"] for e in body["details"]["errors"]] == ["email"]

    def test_invalid_json(self, dynamodb_table, api_gateway_event):
        """Malformed bodies are rejected."""
        from api.visitors import handler

        event = api_gateway_event(method="POST", resource="/visitors", body="{not json")
        response = handler(event, None)

        assert response["statusCode"] == 400
        assert json.loads(response["body"])["message"] == "Invalid JSON body"

    def test_requires_user(self, dynamodb_table, api_gateway_event):
        """Requests without a user are unauthorized."""
        from api.visitors import handler

        response = handler(api_gateway_event(user_id=None), None)

        assert response["statusCode"] == 401


class TestGetVisitor:
    """Tests for GET /visitors/{visitor_id}."""

    def test_missing_visitor(self, dynamodb_table, api_gateway_event):
        """Missing visitors return 404."""
        from api.visitors import handler

        response = handler(_visitor_event(api_gateway_event, "missing"), None)

        assert response["statusCode"] == 404
        body = json.loads(response["body"])
        assert body["message"] == "Visitor with ID 'missing' not found"


class TestListVisitors:
    """Tests for GET /visitors."""

    def test_list_with_pagination(self, dynamodb_table, api_gateway_event):
        """Listing pages through visitors with a cursor."""
        from api.visitors import handler

        for i in range(3):
            _create(handler, api_gateway_event, name=f"Visitor {i}")

        response = handler(api_gateway_event(query_params={"limit": "2"}), None)
        body = json.loads(response["body"])

        assert response["statusCode"] == 200
        assert [v["name"] for v in body["items"]] == ["Visitor 2", "Visitor 1"]
        assert body["pagination"]["has_more"] is True

        cursor = body["pagination"]["next_cursor"]
        response = handler(api_gateway_event(query_params={"limit": "2", "cursor": cursor}), None)
        body = json.loads(response["body"])

        assert [v["name"] for v in body["items"]] == ["Visitor 0"]
        assert body["pagination"]["has_more"] is False
        assert body["pagination"]["next_cursor"] is None

    def test_list_with_search(self, dynamodb_table, api_gateway_event):
        """Search narrows the listing."""
        from api.visitors import handler

        _create(handler, api_gateway_event)
        _create(handler, api_gateway_event, name="Joao Silva", email="joao@example.org")

        response = handler(api_gateway_event(query_params={"search": "joao"}), None)
        body = json.loads(response["body"])

        assert [v["name"] for v in body["items"]] == ["Joao Silva"]

    def test_date_range_needs_both_ends(self, dynamodb_table, api_gateway_event):
        """A range with only a start is rejected."""
        from api.visitors import handler

        event = api_gateway_event(query_params={"start": "2024-01-01T00:00:00Z"})
        response = handler(event, None)

        assert response["statusCode"] == 400

    def test_invalid_status_filter(self, dynamodb_table, api_gateway_event):
        """Unknown status values are rejected."""
        from api.visitors import handler

        response = handler(api_gateway_event(query_params={"status": "archived"}), None)

        assert response["statusCode"] == 400

    def test_invalid_cursor(self, dynamodb_table, api_gateway_event):
        """Garbage cursors are rejected."""
        from api.visitors import handler

        response = handler(api_gateway_event(query_params={"cursor": "@@@"}), None)

        assert response["statusCode"] == 400

    def test_cursor_with_other_keys(self, dynamodb_table, api_gateway_event):
        """Well-formed cursors with the wrong keys are a client error."""
        from api.visitors import handler
        from congrega.repositories.base import encode_cursor

        cursor = encode_cursor({"PK": "visitors", "SK": "VISITOR#x"})
        response = handler(api_gateway_event(query_params={"cursor": cursor}), None)
        body = json.loads(response["body"])

        assert response["statusCode"] == 400
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["details"]["errors"][0]["field"] == "cursor"


class TestUpdateAndDelete:
    """Tests for PUT and DELETE /visitors/{visitor_id}."""

    def test_update_visitor(self, dynamodb_table, api_gateway_event):
        """Updates return the stored visitor."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)

        response = handler(
            _visitor_event(
                api_gateway_event,
                visitor_id,
                method="PUT",
                body={"profession": "Nurse", "phone": None},
            ),
            None,
        )
        body = json.loads(response["body"])

        assert response["statusCode"] == 200
        assert body["profession"] == "Nurse"
        assert body["phone"] is None

    def test_update_converted_requires_membership(self, dynamodb_table, api_gateway_event):
        """Setting converted without membership is rejected."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)

        response = handler(
            _visitor_event(api_gateway_event, visitor_id, method="PUT", body={"status": "converted"}),
            None,
        )

        assert response["statusCode"] == 400

    def test_update_drops_membership_of_converted(self, dynamodb_table, api_gateway_event):
        """A converted visitor cannot lose membership through a partial update."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)
        response = handler(
            _visitor_event(
                api_gateway_event,
                visitor_id,
                method="POST",
                suffix="/convert",
                body={"member_id": "member-1", "force": True},
            ),
            None,
        )
        assert response["statusCode"] == 200

        response = handler(
            _visitor_event(api_gateway_event, visitor_id, method="PUT", body={"is_member": False}),
            None,
        )
        body = json.loads(response["body"])

        assert response["statusCode"] == 409
        assert body["error_code"] == "CONVERTED_VISITOR"
        assert body["details"]["visitor_id"] == visitor_id

        response = handler(_visitor_event(api_gateway_event, visitor_id), None)
        assert json.loads(response["body"])["is_member"] is True

    def test_update_missing_visitor(self, dynamodb_table, api_gateway_event):
        """Updating a missing visitor returns 404."""
        from api.visitors import handler

        response = handler(
            _visitor_event(api_gateway_event, "missing", method="PUT", body={"profession": "Nurse"}),
            None,
        )

        assert response["statusCode"] == 404

    def test_delete_requires_admin(self, dynamodb_table, api_gateway_event):
        """Only administrators can delete visitors."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)

        response = handler(_visitor_event(api_gateway_event, visitor_id, method="DELETE"), None)

        assert response["statusCode"] == 403

    def test_delete_visitor(self, dynamodb_table, api_gateway_event):
        """Administrators delete visitors."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)

        response = handler(
            _visitor_event(api_gateway_event, visitor_id, method="DELETE", is_admin=True),
            None,
        )
        assert response["statusCode"] == 204

        response = handler(_visitor_event(api_gateway_event, visitor_id), None)
        assert response["statusCode"] == 404


class TestFollowUpRoutes:
    """Tests for contact attempts, visits and conversion."""

    def test_add_contact_attempt(self, dynamodb_table, api_gateway_event):
        """Attempts are attributed to the current user."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)

        response = handler(
            _visitor_event(
                api_gateway_event,
                visitor_id,
                method="POST",
                suffix="/contact-attempts",
                body={
                    "type": "welcome",
                    "method": "whatsapp",
                    "notes": "Sent a welcome message",
                    "successful": True,
                },
            ),
            None,
        )
        body = json.loads(response["body"])

        assert response["statusCode"] == 201
        assert body["contacted_by"] == "test-user-123"
        assert body["id"]

        visitor = json.loads(handler(_visitor_event(api_gateway_event, visitor_id), None)["body"])
        assert visitor["follow_up_status"] == "completed"

    def test_contact_attempt_missing_visitor(self, dynamodb_table, api_gateway_event):
        """Attempts on a missing visitor return 404."""
        from api.visitors import handler

        response = handler(
            _visitor_event(
                api_gateway_event,
                "x",
                method="POST",
                suffix="/contact-attempts",
                body={"type": "welcome", "method": "phone", "notes": "Hi", "successful": False},
            ),
            None,
        )

        assert response["statusCode"] == 404

    def test_record_and_list_visits(self, dynamodb_table, api_gateway_event):
        """Recorded visits show up newest first."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)
        for visit_date in ("2024-01-22T10:00:00Z", "2024-01-29T10:00:00Z"):
            response = handler(
                _visitor_event(
                    api_gateway_event,
                    visitor_id,
                    method="POST",
                    suffix="/visits",
                    body={"visit_date": visit_date, "service": "sunday_morning"},
                ),
                None,
            )
            assert response["statusCode"] == 201

        response = handler(_visitor_event(api_gateway_event, visitor_id, suffix="/visits"), None)
        items = json.loads(response["body"])["items"]

        assert [item["visit_date"][:10] for item in items] == ["2024-01-29", "2024-01-22"]
        assert all(item["registered_by"] == "test-user-123" for item in items)

    def test_visits_of_missing_visitor(self, dynamodb_table, api_gateway_event):
        """History of a missing visitor returns 404."""
        from api.visitors import handler

        response = handler(_visitor_event(api_gateway_event, "missing", suffix="/visits"), None)

        assert response["statusCode"] == 404

    @pytest.mark.parametrize("force,expected", [(False, 409), (True, 200)])
    def test_convert_ineligible(self, dynamodb_table, api_gateway_event, force, expected):
        """Ineligible visitors convert only when forced."""
        from api.visitors import handler

        visitor_id = _create(handler, api_gateway_event)

        response = handler(
            _visitor_event(
                api_gateway_event,
                visitor_id,
                method="POST",
                suffix="/convert",
                body={"member_id": "member-1", "force": force},
            ),
            None,
        )

        body = json.loads(response["body"])
        assert response["statusCode"] == expected
        if force:
            assert body["status"] == "converted"
            assert body["is_member"] is True
        else:
            assert body["error_code"] == "NOT_ELIGIBLE"
            assert "follow-up is pending" in body["details"]["reasons"]
            assert "1 of 3 visits" in body["details"]["reasons"]

    def test_stats(self, dynamodb_table, api_gateway_event):
        """Stats summarize the visitor set."""
        from api.visitors import handler

        _create(handler, api_gateway_event)
        _create(handler, api_gateway_event, name="Joao Silva")

        response = handler(api_gateway_event(resource="/visitors/stats"), None)
        body = json.loads(response["body"])

        assert response["statusCode"] == 200
        assert body["total_visitors"] == 2
        assert body["pending_follow_up"] == 2
        assert body["conversion_rate"] == 0
