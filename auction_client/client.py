import requests

from auction_server.config import SERVERS

TIMEOUT = 2


def get_server():
    """Return the first alive server from the list"""
    for server in SERVERS:
        try:
            r = requests.get(f"{server}/health", timeout=0.5)
            if r.status_code == 200:
                return server
        except requests.RequestException:
            continue
    raise RuntimeError("No server is alive!")


def auth_headers(user_id):
    return {"X-User-Id": str(user_id)}


def register(server, username, email, full_name):
    r = requests.post(
        f"{server}/api/users",
        json={"username": username, "email": email, "fullName": full_name},
        timeout=TIMEOUT,
    )
    return r.json()


def list_auctions(server):
    r = requests.get(f"{server}/api/auctions", timeout=TIMEOUT)
    return r.json()


def show_auction(server, auction_id):
    auction = requests.get(f"{server}/api/auctions/{auction_id}", timeout=TIMEOUT).json()
    bids = requests.get(f"{server}/api/auctions/{auction_id}/bids", timeout=TIMEOUT).json()
    return auction, bids


def place_bid(server, user_id, auction_id, amount):
    r = requests.post(
        f"{server}/api/bids",
        json={"auctionId": auction_id, "amount": amount},
        headers=auth_headers(user_id),
        timeout=TIMEOUT,
    )
    body = r.json()
    if r.status_code == 201:
        return f"Bid accepted: {body['amount']}"
    # the server tells us what would have been accepted
    if "minBid" in body:
        return f"{body['message']} (minimum bid: {body['minBid']})"
    if "currentPrice" in body:
        return f"{body['message']} (current price: {body['currentPrice']})"
    return body.get("message") or str(body.get("detail"))


def close_auction(server, user_id, auction_id):
    r = requests.post(
        f"{server}/api/auctions/{auction_id}/close",
        headers=auth_headers(user_id),
        timeout=TIMEOUT,
    )
    body = r.json()
    if r.status_code == 200:
        return f"Auction {body['id']} closed, winner: {body['winnerId']}"
    return body.get("message") or str(body.get("detail"))


def format_auction(a):
    return (f"{a['id']} | {a['title']} | status: {a['status']} | current price: {a['currentPrice']} "
            f"| min increment: {a['minBidIncrement']} | bids: {a['bidCount']} | ends: {a['endTime']}")


# ===== MENU =====

def main():
    user_id = None

    while True:
        print("\n1. Register")
        print("2. Login with user id")
        print("3. List auctions")
        print("4. Show auction")
        print("5. Place bid")
        print("6. Close auction")
        print("7. Exit")

        c = input("> ")

        try:
            server = get_server()
        except RuntimeError as e:
            print(e)
            continue

        try:
            if c == "1":
                user = register(server, input("Username: "), input("Email: "), input("Full name: "))
                if "id" in user:
                    user_id = user["id"]
                    print(f"Registered with id {user_id}")
                else:
                    print(user)
            elif c == "2":
                user_id = int(input("User id: "))
            elif c == "3":
                for a in list_auctions(server):
                    print(format_auction(a))
            elif c == "4":
                auction, bids = show_auction(server, int(input("Auction ID: ")))
                if "id" not in auction:
                    print(auction.get("message"))
                    continue
                print(format_auction(auction))
                for b in bids:
                    print(f"  {b['createdAt']} | user {b['userId']} | {b['amount']}")
            elif c in ("5", "6"):
                if user_id is None:
                    print("Please register or login first.")
                    continue
                auction_id = int(input("Auction ID: "))
                if c == "5":
                    amount = int(input("Bid amount: "))
                    print(place_bid(server, user_id, auction_id, amount))
                else:
                    print(close_auction(server, user_id, auction_id))
            else:
                break
        except ValueError:
            print("Please enter a number.")


if __name__ == "__main__":
    main()
