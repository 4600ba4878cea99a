from app.services.pricing import (
    CREDIT_PACKS,
    calculate_total_cost,
    cost_table,
    get_credit_cost,
    get_credit_pack,
    insufficient_credits_message,
)


def main() -> None:
    assert get_credit_cost("text_to_image") == 30
    assert get_credit_cost("image_to_video") == 80
    assert get_credit_cost("text_to_video", {"text_to_video": 120}) == 120

    batch = ["text_to_image", "image_to_image", "text_to_video"]
    assert calculate_total_cost(batch) == 140, calculate_total_cost(batch)

    try:
        get_credit_cost("text_to_audio")
    except ValueError:
        pass
    else:
        raise AssertionError("unknown generation type accepted")

    table = {row["type"]: row["credits"] for row in cost_table()}
    assert table == {"text_to_image": 30, "image_to_image": 30, "text_to_video": 80, "image_to_video": 80}, table

    assert get_credit_pack(" Small ") is CREDIT_PACKS["small"]
    assert get_credit_pack("xl") is None
    assert [p.credits for p in CREDIT_PACKS.values()] == [7000, 15000, 18000]

    msg = insufficient_credits_message("text_to_video", 80, 50)
    assert msg == "You need 80 credits to generate Text to Video, but you only have 50 credits.", msg

    print("OK")


if __name__ == "__main__":
    main()
